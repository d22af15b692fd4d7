"""Conveyor - a durable task queue with admission control on PostgreSQL"""

# Install compact error rendering on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.app import Conveyor
from .core.models.app import AppConfig
from .core.models.broker import PostgresConfig
from .core.models.tasks import StatusEvent, TaskEnvelope, TaskRecord
from .core.types.status import TaskStatus, TaskType
from .core.admission.result_types import (
    AdmissionErrorKind,
    AdmissionRejection,
    HealthReport,
    SubmitAccepted,
)
from .core.errors import ConfigurationError, ConveyorError, ErrorCode, StartupError
from .core.handlers.registry import HandlerRegistry, TaskHandlerError

__all__ = [
    'Conveyor',
    'AppConfig',
    'PostgresConfig',
    'StatusEvent',
    'TaskEnvelope',
    'TaskRecord',
    'TaskStatus',
    'TaskType',
    'AdmissionErrorKind',
    'AdmissionRejection',
    'HealthReport',
    'SubmitAccepted',
    'ConfigurationError',
    'ConveyorError',
    'ErrorCode',
    'StartupError',
    'HandlerRegistry',
    'TaskHandlerError',
]
