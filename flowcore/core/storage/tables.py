from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for flowcore tables"""

    pass


class TaskDefinitionRow(Base):
    """
    Named task metadata.

    - name: str # primary key
    - remaining columns mirror TaskDefinition field-for-field
    """

    __tablename__ = 'flowcore_task_definitions'

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    id: Mapped[str] = mapped_column(String(36), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False)
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    timeout_policy: Mapped[str] = mapped_column(String(32), nullable=False)
    retry_logic: Mapped[str] = mapped_column(String(32), nullable=False)
    retry_delay_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    response_timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    backoff_scale_factor: Mapped[int] = mapped_column(Integer, nullable=False)
    concurrent_exec_limit: Mapped[Optional[int]] = mapped_column(Integer)
    rate_limit_per_frequency: Mapped[Optional[int]] = mapped_column(Integer)
    rate_limit_frequency_in_seconds: Mapped[Optional[int]] = mapped_column(Integer)
    poll_timeout_seconds: Mapped[Optional[int]] = mapped_column(Integer)
    isolation_group_id: Mapped[Optional[str]] = mapped_column(String(255))
    execution_name_space: Mapped[Optional[str]] = mapped_column(String(255))
    owner_email: Mapped[Optional[str]] = mapped_column(String(255))
    enforce_schema: Mapped[bool] = mapped_column(Boolean, nullable=False)
    input_schema: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB)
    output_schema: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB)
    input_keys: Mapped[list[str]] = mapped_column(JSONB, nullable=False)
    output_keys: Mapped[list[str]] = mapped_column(JSONB, nullable=False)
    input_template: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TaskConfigRow(Base):
    """
    Workflow-graph node. Only the routing columns are broken out; the full
    config (including kind-specific fields) lives in ``body``.
    """

    __tablename__ = 'flowcore_task_configs'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    task_reference_name: Mapped[str] = mapped_column(String(255), nullable=False)
    task_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    body: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)


class TaskModelRow(Base):
    """Execution record; columns mirror TaskModel field-for-field."""

    __tablename__ = 'flowcore_task_models'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    task_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    kind_record_id: Mapped[Optional[str]] = mapped_column(String(36))
    task_config_id: Mapped[Optional[str]] = mapped_column(String(36))
    task_def_name: Mapped[Optional[str]] = mapped_column(String(255))
    reference_task_name: Mapped[Optional[str]] = mapped_column(String(255))
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(255))
    poll_count: Mapped[int] = mapped_column(Integer, nullable=False)

    scheduled_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    update_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    start_delay_in_seconds: Mapped[int] = mapped_column(Integer, nullable=False)

    retried_task_id: Mapped[Optional[str]] = mapped_column(String(36))
    retried: Mapped[bool] = mapped_column(Boolean, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False)
    executed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    callback_from_worker: Mapped[bool] = mapped_column(Boolean, nullable=False)
    response_timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    callback_after_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    wait_timeout: Mapped[Optional[int]] = mapped_column(BigInteger)

    workflow_instance_id: Mapped[Optional[str]] = mapped_column(String(36))
    workflow_type: Mapped[Optional[str]] = mapped_column(String(255))
    workflow_priority: Mapped[int] = mapped_column(Integer, nullable=False)
    reason_for_incompletion: Mapped[Optional[str]] = mapped_column(Text)

    worker_id: Mapped[Optional[str]] = mapped_column(String(255))
    domain: Mapped[Optional[str]] = mapped_column(String(255))
    input_data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    output_data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    external_input_payload_storage_path: Mapped[Optional[str]] = mapped_column(Text)
    external_output_payload_storage_path: Mapped[Optional[str]] = mapped_column(Text)

    rate_limit_per_frequency: Mapped[Optional[int]] = mapped_column(Integer)
    rate_limit_frequency_in_seconds: Mapped[Optional[int]] = mapped_column(Integer)
    execution_name_space: Mapped[Optional[str]] = mapped_column(String(255))
    isolation_group_id: Mapped[Optional[str]] = mapped_column(String(255))
    iteration: Mapped[int] = mapped_column(Integer, nullable=False)
    subworkflow_changed: Mapped[bool] = mapped_column(Boolean, nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index('idx_flowcore_task_models_status_type', 'status', 'task_type'),
        Index(
            'idx_flowcore_task_models_workflow_ref',
            'workflow_instance_id',
            'reference_task_name',
        ),
    )


class TaskKindRecordRow(Base):
    """
    Kind-specific execution state, one row per TaskModel.

    - task_type: str # selects the kind record class when loading
    - state: dict # kind-specific fields (fork_type, child_task_ids, join_on, ...)
    """

    __tablename__ = 'flowcore_task_kind_records'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    task_type: Mapped[str] = mapped_column(String(32), nullable=False)
    task_model_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    task_config_id: Mapped[Optional[str]] = mapped_column(String(36))
    state: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)


class TaskExecutionLogRow(Base):
    __tablename__ = 'flowcore_task_execution_logs'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    task_id: Mapped[str] = mapped_column(String(36), nullable=False)
    log: Mapped[str] = mapped_column(Text, nullable=False)
    created_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('idx_flowcore_task_logs_task_time', 'task_id', 'created_time'),
    )


class PollDataRow(Base):
    __tablename__ = 'flowcore_poll_data'

    id: Mapped[str] = mapped_column(String(512), primary_key=True)
    queue_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    domain: Mapped[str] = mapped_column(String(255), nullable=False)
    worker_id: Mapped[Optional[str]] = mapped_column(String(255))
    last_poll_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_on: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    modified_on: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    json_data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)


class QueueMessageRow(Base):
    """
    One queue entry.

    - seq: bigint # insertion order; FIFO within queue_name and priority
    - priority: int # 0-99, higher is served first
    - visible_at: datetime # not ready before this (push delay)
    - lease_expires_at: datetime # NULL while ready, set while in flight
    """

    __tablename__ = 'flowcore_queue_messages'

    seq: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    queue_name: Mapped[str] = mapped_column(String(255), nullable=False)
    item_id: Mapped[str] = mapped_column(String(255), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text('0'))
    visible_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()')
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()')
    )
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index(
            'idx_flowcore_queue_ready',
            'queue_name',
            'priority',
            'seq',
            postgresql_where=text('lease_expires_at IS NULL'),
        ),
        Index('uq_flowcore_queue_item', 'queue_name', 'item_id', unique=True),
    )
