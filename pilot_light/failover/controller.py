"""
Failover Controller

Decides, once per invocation, whether the deployment moves through the
failover state machine. Runs either on a schedule (evaluate) or on an operator
directive (handle_directive). All state lives in the persisted FailoverState
row; every transition is a compare-and-swap on its version, so two concurrent
invocations can never both apply a transition from the same snapshot.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from ..common.config import Config
from ..common.errors import ConflictError, DRError, ValidationError
from ..common.logger import ComponentLoggerAdapter, get_logger
from ..monitoring import metrics as metric_names
from ..monitoring.health_monitor import HealthMonitor, HealthRecord
from ..monitoring.metrics import MetricsEmitter
from .routing import RoutingIntent, RoutingIntentPublisher
from .state_machine import FailoverStatus, HealthThresholds, Outcome
from .state_store import FailoverState, FailoverStateRepository

logger = get_logger(__name__)

VALID_ACTIONS = ("failover", "failback")


@dataclass
class ControllerResult:
    """Outcome of one controller invocation"""
    outcome: Outcome
    state: Optional[FailoverState]
    message: str = ""
    stage: Optional[str] = None
    error: Optional[DRError] = None

    def to_response(self) -> Dict[str, Any]:
        response = {
            'outcome': self.outcome.value,
            'currentState': self.state.current_state.value if self.state else None,
            'activeRegion': self.state.active_region if self.state else None,
            'version': self.state.version if self.state else None,
            'message': self.message,
        }
        if self.stage:
            response['stage'] = self.stage
        if self.error is not None:
            response['error'] = str(self.error)
            response['errorType'] = self.error.error_type
        return response


@dataclass
class Directive:
    """Validated operator request"""
    action: str
    target_region: str
    force: bool = False

    @classmethod
    def parse(cls, payload: Dict[str, Any], config: Config) -> "Directive":
        if not isinstance(payload, dict):
            raise ValidationError("Directive must be an object")

        action = payload.get('action')
        if action not in VALID_ACTIONS:
            raise ValidationError(f"Unsupported action {action!r}; expected one of {', '.join(VALID_ACTIONS)}")

        target = payload.get('targetRegion')
        if not target or not isinstance(target, str):
            raise ValidationError("targetRegion is required")
        if target not in config.regions:
            raise ValidationError(f"targetRegion {target} is not a configured region")

        if action == "failover" and target == config.PRIMARY_REGION:
            raise ValidationError("failover target must be the standby region")
        if action == "failback" and target != config.PRIMARY_REGION:
            raise ValidationError("failback target must be the primary region")

        force = payload.get('force', False)
        if not isinstance(force, bool):
            raise ValidationError("force must be a boolean")

        return cls(action=action, target_region=target, force=force)


class FailoverController:
    """
    Pilot-light failover controller

    Collaborators are injected so tests can substitute fakes; by default they
    are built from the configuration.
    """

    def __init__(
        self,
        config: Config,
        repository: Optional[FailoverStateRepository] = None,
        health_monitor: Optional[HealthMonitor] = None,
        publisher: Optional[RoutingIntentPublisher] = None,
        metrics: Optional[MetricsEmitter] = None,
        sync_checker=None,
    ):
        self.config = config
        self.metrics = metrics or MetricsEmitter(namespace=config.METRICS_NAMESPACE)
        self.repository = repository or FailoverStateRepository(config)
        self.health_monitor = health_monitor or HealthMonitor(config, metrics=self.metrics)
        self.publisher = publisher or RoutingIntentPublisher(config)
        # Anything with an async validate(...) returning a ValidationReport
        self.sync_checker = sync_checker
        self.thresholds = HealthThresholds.from_config(config)
        self.log = ComponentLoggerAdapter(
            logger, {'component': 'failover_controller', 'deployment_id': config.DEPLOYMENT_ID}
        )
        self._state: Optional[FailoverState] = None

    # ── Entry points ──────────────────────────────────────────────────────

    async def evaluate(self) -> ControllerResult:
        """Periodic health-driven evaluation"""
        return await self._guarded(self._evaluate())

    async def handle_directive(self, payload: Dict[str, Any]) -> ControllerResult:
        """Apply an operator failover/failback request"""
        try:
            directive = Directive.parse(payload, self.config)
        except ValidationError as e:
            self.log.warning(f"Rejected directive: {e}", extra={'outcome': Outcome.REJECTED.value})
            return ControllerResult(Outcome.REJECTED, None, message=str(e), error=e)
        return await self._guarded(self._handle_directive(directive))

    async def _guarded(self, operation) -> ControllerResult:
        try:
            result = await operation
        except ConflictError as e:
            self.log.warning(f"Concurrent update detected, aborting: {e}",
                             extra={'outcome': Outcome.CONFLICT.value})
            return ControllerResult(Outcome.CONFLICT, self._state, message=str(e), error=e)
        except DRError as e:
            self.log.error(f"Controller invocation failed: {e}", extra={'outcome': Outcome.FAILED.value})
            return ControllerResult(Outcome.FAILED, self._state, message=str(e), stage=e.stage, error=e)

        self.log.info(
            f"Controller outcome {result.outcome.value}: {result.message}",
            extra={
                'outcome': result.outcome.value,
                'state': result.state.current_state.value if result.state else None,
            },
        )
        return result

    # ── State helpers ─────────────────────────────────────────────────────

    async def _load(self) -> FailoverState:
        self._state = await self.repository.load_or_initialize(self.config.PRIMARY_REGION)
        return self._state

    async def _swap(self, state: FailoverState, **changes) -> FailoverState:
        self._state = await self.repository.compare_and_swap(state, **changes)
        return self._state

    async def _apply_health(
        self,
        state: FailoverState,
        health: HealthRecord,
        allow_recovery: bool = True,
    ) -> Tuple[FailoverState, bool]:
        """
        Apply the health rules to a Normal or Degraded state.

        Returns:
            (state, failover_due) where failover_due means the critical streak
            reached the configured count while Degraded. The streak is not
            persisted in that case; the caller decides whether to fail over.
        """
        t = self.thresholds
        status = state.current_state

        if status == FailoverStatus.NORMAL:
            over_ceiling = t.exceeds_ceiling(health)
            if over_ceiling or t.is_breach(health):
                breaches = state.consecutive_breaches + 1
                if over_ceiling or breaches >= t.consecutive_failures:
                    reason = "replication lag above hard ceiling" if over_ceiling else \
                        f"{breaches} consecutive unhealthy evaluations"
                    self.log.warning(f"Primary degraded: {reason}", extra={'region': health.region})
                    state = await self._swap(
                        state,
                        current_state=FailoverStatus.DEGRADED,
                        consecutive_breaches=0,
                        last_action="degrade",
                    )
                else:
                    state = await self._swap(state, consecutive_breaches=breaches)
            elif state.consecutive_breaches:
                state = await self._swap(state, consecutive_breaches=0)
            return state, False

        if status == FailoverStatus.DEGRADED:
            if allow_recovery and t.is_recovered(health):
                self.log.info("Primary recovered", extra={'region': health.region})
                state = await self._swap(
                    state,
                    current_state=FailoverStatus.NORMAL,
                    consecutive_breaches=0,
                    last_action="recover",
                )
                return state, False
            if t.is_critical(health):
                breaches = state.consecutive_breaches + 1
                if breaches >= t.consecutive_failures:
                    return state, True
                state = await self._swap(state, consecutive_breaches=breaches)
            elif state.consecutive_breaches:
                state = await self._swap(state, consecutive_breaches=0)

        return state, False

    # ── Auto mode ─────────────────────────────────────────────────────────

    async def _evaluate(self) -> ControllerResult:
        state = await self._load()

        if state.current_state == FailoverStatus.FAILOVER_IN_PROGRESS:
            self.log.warning("Resuming interrupted failover")
            return await self._run_failover(state, self.config.peer_region(state.active_region),
                                            reason="resume")
        if state.current_state == FailoverStatus.FAILBACK_IN_PROGRESS:
            self.log.warning("Resuming interrupted failback")
            return await self._run_failback(state, reason="resume")

        health = await self.health_monitor.check(self.config.PRIMARY_REGION)

        if state.current_state == FailoverStatus.FAILED_OVER:
            return ControllerResult(Outcome.NO_OP, state,
                                    message=f"Failed over to {state.active_region}; failback is manual")

        before = state
        state, failover_due = await self._apply_health(state, health)

        if failover_due:
            if self.config.AUTO_FAILOVER_ENABLED:
                return await self._run_failover(state, self.config.STANDBY_REGION,
                                                reason="primary critical")
            state = await self._swap(state, consecutive_breaches=state.consecutive_breaches + 1)
            return ControllerResult(Outcome.NO_OP, state,
                                    message="Primary critical; automatic failover disabled")

        if state.current_state != before.current_state:
            return ControllerResult(
                Outcome.TRANSITIONED, state,
                message=f"{before.current_state.value} -> {state.current_state.value}",
            )
        return ControllerResult(Outcome.NO_OP, state,
                                message=f"State {state.current_state.value} unchanged")

    # ── Manual mode ───────────────────────────────────────────────────────

    async def _handle_directive(self, directive: Directive) -> ControllerResult:
        state = await self._load()
        self.log.info(
            f"Directive {directive.action} to {directive.target_region} (force={directive.force})",
            extra={'state': state.current_state.value},
        )

        if directive.action == "failover":
            return await self._directive_failover(state, directive)
        return await self._directive_failback(state, directive)

    async def _directive_failover(self, state: FailoverState, directive: Directive) -> ControllerResult:
        status = state.current_state

        if status == FailoverStatus.FAILED_OVER and state.active_region == directive.target_region:
            return ControllerResult(Outcome.NO_OP, state,
                                    message=f"Already failed over to {directive.target_region}")
        if status == FailoverStatus.FAILOVER_IN_PROGRESS:
            return await self._run_failover(state, directive.target_region, reason="resume")
        if status not in (FailoverStatus.NORMAL, FailoverStatus.DEGRADED):
            return ControllerResult(Outcome.REJECTED, state,
                                    message=f"Cannot fail over from {status.value}")

        health = await self.health_monitor.check(self.config.PRIMARY_REGION)
        state, _ = await self._apply_health(state, health, allow_recovery=not directive.force)

        if state.current_state == FailoverStatus.DEGRADED:
            return await self._run_failover(state, directive.target_region, reason="operator directive")

        # Normal: either it never degraded or it just recovered
        if not directive.force:
            message = "Primary recovered; failover not forced" if status == FailoverStatus.DEGRADED \
                else "Primary healthy; use force to fail over"
            return ControllerResult(Outcome.REJECTED, state, message=message)

        state = await self._swap(state, current_state=FailoverStatus.DEGRADED,
                                 consecutive_breaches=0, last_action="forced")
        return await self._run_failover(state, directive.target_region, reason="forced operator directive")

    async def _directive_failback(self, state: FailoverState, directive: Directive) -> ControllerResult:
        status = state.current_state

        if status == FailoverStatus.FAILBACK_IN_PROGRESS:
            return await self._run_failback(state, reason="resume")

        health = await self.health_monitor.check(self.config.PRIMARY_REGION)

        if status == FailoverStatus.NORMAL:
            before = state
            state, _ = await self._apply_health(state, health)
            if state.current_state == FailoverStatus.NORMAL and state.active_region == directive.target_region:
                return ControllerResult(Outcome.NO_OP, state,
                                        message=f"Already active on {directive.target_region}")
            return ControllerResult(Outcome.REJECTED, state,
                                    message=f"Cannot fail back from {state.current_state.value} "
                                            f"(was {before.current_state.value})")

        if status != FailoverStatus.FAILED_OVER:
            if status == FailoverStatus.DEGRADED:
                state, _ = await self._apply_health(state, health)
            return ControllerResult(Outcome.REJECTED, state,
                                    message=f"Cannot fail back from {status.value}")

        if not self.thresholds.is_recovered(health):
            return ControllerResult(Outcome.REJECTED, state,
                                    message=f"Primary {self.config.PRIMARY_REGION} has not recovered "
                                            f"(score={health.health_score:.2f})")

        in_sync, detail = await self._data_in_sync()
        if not in_sync:
            return ControllerResult(Outcome.REJECTED, state, message=detail)

        return await self._run_failback(state, reason="operator directive")

    async def _data_in_sync(self) -> Tuple[bool, str]:
        if self.sync_checker is None:
            return False, "No data sync check configured"
        try:
            report = await self.sync_checker.validate(
                'incremental',
                source_region=self.config.STANDBY_REGION,
                target_region=self.config.PRIMARY_REGION,
            )
        except DRError as e:
            return False, f"Data sync check failed: {e}"

        # Empty or partial comparisons never count as in sync
        if not report.tables:
            return False, "Data sync check compared no tables"
        if report.failed_tables:
            return False, f"Data sync check could not validate: {', '.join(report.failed_tables)}"

        minimum = self.config.FAILBACK_MIN_MATCH_PERCENT
        if report.match_percentage < minimum:
            return False, (f"Regions not in sync: {report.match_percentage:.2f}% match, "
                           f"{minimum:.2f}% required")
        return True, f"{report.match_percentage:.2f}% match"

    # ── Sequences ─────────────────────────────────────────────────────────

    async def verify_write_path(self, region: str):
        """Conditional sentinel write plus read-back in the given region"""
        written_at = await self.health_monitor.write_sentinel(region)
        observed = await self.health_monitor.read_sentinel(region)
        if observed is None or observed < written_at:
            raise DRError(f"Write path in {region} did not return the sentinel it accepted")

    async def _run_failover(self, state: FailoverState, target: str, reason: str) -> ControllerResult:
        source = self.config.peer_region(target)
        start_time = datetime.now(timezone.utc)

        if state.current_state != FailoverStatus.FAILOVER_IN_PROGRESS:
            state = await self._swap(
                state,
                current_state=FailoverStatus.FAILOVER_IN_PROGRESS,
                consecutive_breaches=0,
                last_action="failover",
                last_error=None,
                last_stage=None,
            )
        self.log.warning(f"Failover started: {source} -> {target} ({reason})", extra={'region': target})

        stage = "verify_write_path"
        try:
            await self.verify_write_path(target)
            stage = "routing_intent"
            await self.publisher.publish(
                RoutingIntent.failover(target, source, reason=reason, state_version=state.version)
            )
        except Exception as e:
            return await self._abort(state, FailoverStatus.DEGRADED, stage, e)

        state = await self._swap(state, current_state=FailoverStatus.FAILED_OVER, active_region=target)
        self._record_event("failover", target)

        duration = (datetime.now(timezone.utc) - start_time).total_seconds()
        self.log.warning(f"Failover completed in {duration:.2f}s: {source} -> {target}",
                         extra={'region': target})
        return ControllerResult(Outcome.TRANSITIONED, state, message=f"Failed over to {target}")

    async def _run_failback(self, state: FailoverState, reason: str) -> ControllerResult:
        primary = self.config.PRIMARY_REGION
        standby = self.config.STANDBY_REGION
        start_time = datetime.now(timezone.utc)

        if state.current_state != FailoverStatus.FAILBACK_IN_PROGRESS:
            state = await self._swap(
                state,
                current_state=FailoverStatus.FAILBACK_IN_PROGRESS,
                last_action="failback",
                last_error=None,
                last_stage=None,
            )
        self.log.warning(f"Failback started: {standby} -> {primary} ({reason})", extra={'region': primary})

        stage = "verify_write_path"
        try:
            await self.verify_write_path(primary)
            stage = "routing_intent"
            await self.publisher.publish(
                RoutingIntent.failback(primary, standby, reason=reason, state_version=state.version)
            )
        except Exception as e:
            return await self._abort(state, FailoverStatus.FAILED_OVER, stage, e)

        state = await self._swap(state, current_state=FailoverStatus.NORMAL, active_region=primary,
                                 consecutive_breaches=0)
        self._record_event("failback", primary)

        duration = (datetime.now(timezone.utc) - start_time).total_seconds()
        self.log.warning(f"Failback completed in {duration:.2f}s: {standby} -> {primary}",
                         extra={'region': primary})
        return ControllerResult(Outcome.TRANSITIONED, state, message=f"Failed back to {primary}")

    async def _abort(self, state: FailoverState, revert_to: FailoverStatus, stage: str,
                     error: Exception) -> ControllerResult:
        """Record the failed step and move back; no retry within this invocation"""
        if not isinstance(error, DRError):
            error = DRError(f"Unexpected error: {error}", stage=stage)
        elif error.stage is None:
            error.stage = stage

        self.log.error(f"{state.last_action or 'Sequence'} failed at {stage}: {error}")
        state = await self._swap(state, current_state=revert_to, last_error=str(error), last_stage=stage)
        return ControllerResult(Outcome.FAILED, state, message=f"Sequence failed at {stage}",
                                stage=stage, error=error)

    def _record_event(self, action: str, target: str):
        self.metrics.record(metric_names.FAILOVER_EVENT, 1, unit='Count',
                            dimensions={'action': action, 'targetRegion': target})
        self.metrics.flush()
