"""
Invocation handlers.

One event-style entry point per component. The scheduler (or an operator)
invokes a handler with a JSON event; the handler builds its component from
configuration, runs it to completion and returns a JSON-serializable payload.
Errors come back as structured payloads, never as exceptions.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from .backup.backup_manager import BackupManager
from .common.aws import ClientFactory
from .common.config import Config, load_config
from .common.errors import DRError, ValidationError
from .common.logger import setup_logging
from .failover.controller import FailoverController
from .failover.routing import RoutingIntentPublisher
from .failover.state_store import FailoverStateRepository
from .monitoring.health_monitor import HealthMonitor
from .monitoring.metrics import MetricsEmitter
from .replication.data_validator import DataValidator

logger = logging.getLogger(__name__)


class Components:
    """Collaborators shared by the components of a single invocation"""

    def __init__(self, config: Config):
        self.config = config
        self.clients = ClientFactory.from_config(config)
        self.metrics = MetricsEmitter(
            namespace=config.METRICS_NAMESPACE,
            cloudwatch_client=self.clients.get('cloudwatch', config.CONTROL_REGION),
        )

    def health_monitor(self) -> HealthMonitor:
        return HealthMonitor(self.config, metrics=self.metrics, clients=self.clients)

    def backup_manager(self) -> BackupManager:
        return BackupManager(self.config, metrics=self.metrics, clients=self.clients)

    def data_validator(self, with_backup_status: bool = False) -> DataValidator:
        return DataValidator(
            self.config,
            metrics=self.metrics,
            clients=self.clients,
            backup_manager=self.backup_manager() if with_backup_status else None,
        )

    def failover_controller(self) -> FailoverController:
        return FailoverController(
            self.config,
            repository=FailoverStateRepository(self.config, clients=self.clients),
            health_monitor=self.health_monitor(),
            publisher=RoutingIntentPublisher(self.config, clients=self.clients),
            metrics=self.metrics,
            sync_checker=self.data_validator(),
        )


def _prepare(config: Optional[Config]) -> Components:
    config = config or load_config()
    setup_logging(config.LOG_LEVEL, config.STRUCTURED_LOGS)
    config.validate()
    return Components(config)


def _error_response(error: Exception) -> Dict[str, Any]:
    if isinstance(error, DRError):
        logger.error(f"Invocation failed ({error.error_type}): {error}")
        return {'status': 'error', **error.to_dict()}
    logger.exception(f"Unexpected error: {error}")
    return {'status': 'error', 'errorType': 'internal', 'message': str(error)}


def _event(event: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if event is None:
        return {}
    if not isinstance(event, dict):
        raise ValidationError("Event must be a JSON object")
    return event


def health_check_handler(event: Optional[Dict[str, Any]] = None, context=None,
                         config: Optional[Config] = None) -> Dict[str, Any]:
    """Probe a region; `region` in the event overrides the primary"""
    try:
        event = _event(event)
        components = _prepare(config)
        region = event.get('region') or components.config.PRIMARY_REGION
        if region not in components.config.regions:
            raise ValidationError(f"Region {region} is not a configured region")
        record = asyncio.run(components.health_monitor().check(region))
        return record.to_response(components.config.HEALTH_WARNING_THRESHOLD)
    except Exception as e:
        return _error_response(e)


def failover_handler(event: Optional[Dict[str, Any]] = None, context=None,
                     config: Optional[Config] = None) -> Dict[str, Any]:
    """Directive when the event carries an action, periodic evaluation otherwise"""
    try:
        event = _event(event)
        controller = _prepare(config).failover_controller()
        if event.get('action'):
            result = asyncio.run(controller.handle_directive(event))
        else:
            result = asyncio.run(controller.evaluate())
        return result.to_response()
    except Exception as e:
        return _error_response(e)


def backup_handler(event: Optional[Dict[str, Any]] = None, context=None,
                   config: Optional[Config] = None) -> Dict[str, Any]:
    """
    Run a backup job, or report backup recency.

    Event:
        {"tableName": ..., "backupType": "full"|"incremental", "region": ...}
        {"operation": "status", "tableName": ...}
    """
    try:
        event = _event(event)
        manager = _prepare(config).backup_manager()

        if event.get('operation') == 'status':
            status = asyncio.run(manager.backup_status(event.get('tableName')))
            return status.to_dict()

        metadata = asyncio.run(manager.run_backup(
            event.get('tableName'),
            event.get('backupType', 'full'),
            region=event.get('region'),
        ))
        return metadata.to_response()
    except Exception as e:
        return _error_response(e)


def validation_handler(event: Optional[Dict[str, Any]] = None, context=None,
                       config: Optional[Config] = None) -> Dict[str, Any]:
    try:
        event = _event(event)
        validator = _prepare(config).data_validator(with_backup_status=bool(event.get('includeBackupStatus')))
        report = asyncio.run(validator.validate(
            event.get('validationType', 'incremental'),
            source_region=event.get('sourceRegion'),
            target_region=event.get('targetRegion'),
            table_names=event.get('tables'),
            action=event.get('action'),
            persist=bool(event.get('persist', False)),
        ))
        return report.to_dict()
    except Exception as e:
        return _error_response(e)
