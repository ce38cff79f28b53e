# flowcore/core/tasks/__init__.py
"""Task kinds and the resolver.

Importing this package registers every kind record with
``TaskKindRecord.record_class_for``.
"""

from flowcore.core.tasks.base import TaskKindRecord
from flowcore.core.tasks.simple import DynamicRecord, SimpleRecord
from flowcore.core.tasks.fork import DynamicForkRecord, ForkRecord
from flowcore.core.tasks.join import JoinRecord
from flowcore.core.tasks.flow import (
    DoWhileRecord,
    SetVariableRecord,
    SwitchRecord,
    TerminateTaskRecord,
    UpdateTaskRecord,
    WaitRecord,
)
from flowcore.core.tasks.workflow import (
    StartWorkflowRecord,
    SubWorkflowRecord,
    TerminateWorkflowRecord,
)
from flowcore.core.tasks.system import (
    BusinessRuleRecord,
    EventRecord,
    GetSignedJwtRecord,
    HttpRecord,
    InlineRecord,
    JsonTransformRecord,
    SqlTaskRecord,
    UpdateSecretRecord,
    WaitForWebhookRecord,
)
from flowcore.core.tasks.resolver import (
    dispatch_spawned,
    resolve,
    resolve_in_unit,
    schedule,
    to_task,
)

__all__ = [
    'TaskKindRecord',
    'SimpleRecord',
    'DynamicRecord',
    'ForkRecord',
    'DynamicForkRecord',
    'JoinRecord',
    'SwitchRecord',
    'DoWhileRecord',
    'WaitRecord',
    'TerminateTaskRecord',
    'UpdateTaskRecord',
    'SetVariableRecord',
    'SubWorkflowRecord',
    'StartWorkflowRecord',
    'TerminateWorkflowRecord',
    'HttpRecord',
    'InlineRecord',
    'JsonTransformRecord',
    'EventRecord',
    'WaitForWebhookRecord',
    'BusinessRuleRecord',
    'GetSignedJwtRecord',
    'UpdateSecretRecord',
    'SqlTaskRecord',
    'to_task',
    'resolve',
    'resolve_in_unit',
    'schedule',
    'dispatch_spawned',
]
