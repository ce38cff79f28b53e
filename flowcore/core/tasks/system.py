# flowcore/core/tasks/system.py
"""System kinds executed by engine-side workers polling their type queue.

Each record only validates its inputs and keeps the non-secret part of
them; executing the call (HTTP, script, query, signing) belongs to the
worker that polls the queue.
"""

from __future__ import annotations

from typing import Any, ClassVar, Mapping, Optional, Self

from pydantic import Field

from flowcore.core.models.task_config import TaskConfig
from flowcore.core.models.task_model import TaskModel
from flowcore.core.result_types import EngineResult, illegal_argument
from flowcore.core.tasks.base import TaskKindRecord
from flowcore.core.types.result import Ok, is_err
from flowcore.core.types.status import TaskStatus, TaskType


class HttpRecord(TaskKindRecord):
    task_type: ClassVar[TaskType] = TaskType.HTTP

    uri: str
    method: str

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        request = config.get_input_parameter_required('http_request')
        if is_err(request):
            return request
        req = request.ok_value
        if not isinstance(req, Mapping):
            return illegal_argument('HTTP input http_request must be a mapping')
        missing = [k for k in ('uri', 'method') if not req.get(k)]
        if missing:
            return illegal_argument(
                f'HTTP task {config.task_reference_name!r}: http_request is missing '
                f'{", ".join(missing)}'
            )
        return Ok(cls(uri=str(req['uri']), method=str(req['method']).upper()))


class InlineRecord(TaskKindRecord):
    task_type: ClassVar[TaskType] = TaskType.INLINE

    evaluator_type: str

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        required = cls.require(config, inputs=('evaluator_type', 'expression'))
        if is_err(required):
            return required
        return Ok(cls(evaluator_type=str(config.input_parameters['evaluator_type'])))


class JsonTransformRecord(TaskKindRecord):
    task_type: ClassVar[TaskType] = TaskType.JSON_JQ_TRANSFORM

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        required = cls.require(config, inputs=('query_expression',))
        if is_err(required):
            return required
        return Ok(cls())


class EventRecord(TaskKindRecord):
    """EVENT: publishes its input to ``sink`` (``<kind>:<queue>``, e.g. ``sqs:orders``)."""

    task_type: ClassVar[TaskType] = TaskType.EVENT

    sink: str

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        required = cls.require(config, fields=('sink',))
        if is_err(required):
            return required
        return Ok(cls(sink=config.sink or ''))

    def prepare_task(self, model: TaskModel) -> EngineResult[None]:
        model.input_data = {**model.input_data, 'sink': self.sink}
        return Ok(None)


class WaitForWebhookRecord(TaskKindRecord):
    """WAIT_FOR_WEBHOOK: IN_PROGRESS until a webhook whose payload ``matches`` completes it."""

    task_type: ClassVar[TaskType] = TaskType.WAIT_FOR_WEBHOOK
    initial_status: ClassVar[TaskStatus] = TaskStatus.IN_PROGRESS
    queued: ClassVar[bool] = False

    matches: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        raw = config.get_input_parameter_required('matches')
        if is_err(raw):
            return raw
        if not isinstance(raw.ok_value, Mapping):
            return illegal_argument('WAIT_FOR_WEBHOOK input matches must be a mapping')
        return Ok(cls(matches=dict(raw.ok_value)))


class BusinessRuleRecord(TaskKindRecord):
    task_type: ClassVar[TaskType] = TaskType.BUSINESS_RULE

    rule_file_location: str
    execution_strategy: str

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        required = cls.require(
            config,
            inputs=('rule_file_location', 'execution_strategy', 'input_column', 'output_column'),
        )
        if is_err(required):
            return required
        inputs = config.input_parameters
        return Ok(cls(
            rule_file_location=str(inputs['rule_file_location']),
            execution_strategy=str(inputs['execution_strategy']),
        ))


class GetSignedJwtRecord(TaskKindRecord):
    """GET_SIGNED_JWT. The private key is redacted from every stored row."""

    task_type: ClassVar[TaskType] = TaskType.GET_SIGNED_JWT
    secret_inputs: ClassVar[tuple[tuple[str, ...], ...]] = (('private_key',),)

    subject: str
    issuer: str
    algorithm: str
    ttl_in_seconds: int

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        required = cls.require(
            config,
            inputs=(
                'subject', 'issuer', 'private_key', 'private_key_id',
                'audience', 'ttl_in_seconds', 'scopes', 'algorithm',
            ),
        )
        if is_err(required):
            return required
        inputs = config.input_parameters
        ttl = inputs['ttl_in_seconds']
        if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl <= 0:
            return illegal_argument(f'GET_SIGNED_JWT ttl_in_seconds must be a positive integer, got {ttl!r}')
        return Ok(cls(
            subject=str(inputs['subject']),
            issuer=str(inputs['issuer']),
            algorithm=str(inputs['algorithm']),
            ttl_in_seconds=ttl,
        ))


class UpdateSecretRecord(TaskKindRecord):
    """UPDATE_SECRET. Only the key is kept; the value is redacted from every stored row."""

    task_type: ClassVar[TaskType] = TaskType.UPDATE_SECRET
    secret_inputs: ClassVar[tuple[tuple[str, ...], ...]] = (('_secrets', 'secret_value'),)

    secret_key: str

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        raw = config.get_input_parameter_required('_secrets')
        if is_err(raw):
            return raw
        secrets = raw.ok_value
        if not isinstance(secrets, Mapping) or not secrets.get('secret_key') or (
            secrets.get('secret_value') is None
        ):
            return illegal_argument(
                f'UPDATE_SECRET task {config.task_reference_name!r}: input _secrets '
                'needs secret_key and secret_value'
            )
        return Ok(cls(secret_key=str(secrets['secret_key'])))


class SqlTaskRecord(TaskKindRecord):
    task_type: ClassVar[TaskType] = TaskType.SQL_TASK

    integration_name: str
    operation_type: str
    expected_output_count: Optional[int] = None

    @classmethod
    def build(cls, config: TaskConfig) -> EngineResult[Self]:
        required = cls.require(
            config, inputs=('integration_name', 'statement', 'operation_type')
        )
        if is_err(required):
            return required
        inputs = config.input_parameters
        parameters = inputs.get('parameters')
        if not isinstance(parameters, list):
            return illegal_argument(
                f'SQL_TASK task {config.task_reference_name!r}: input parameters must be a list'
            )
        expected = inputs.get('expected_output_count')
        if expected is not None and (isinstance(expected, bool) or not isinstance(expected, int)):
            return illegal_argument('SQL_TASK expected_output_count must be an integer')
        return Ok(cls(
            integration_name=str(inputs['integration_name']),
            operation_type=str(inputs['operation_type']),
            expected_output_count=expected,
        ))
