"""Failover state machine, persistence and controller."""

from .controller import ControllerResult, Directive, FailoverController
from .routing import RoutingIntent, RoutingIntentPublisher
from .state_machine import FailoverStatus, HealthThresholds, Outcome
from .state_store import FailoverState, FailoverStateRepository

__all__ = [
    'ControllerResult',
    'Directive',
    'FailoverController',
    'FailoverState',
    'FailoverStateRepository',
    'FailoverStatus',
    'HealthThresholds',
    'Outcome',
    'RoutingIntent',
    'RoutingIntentPublisher',
]
