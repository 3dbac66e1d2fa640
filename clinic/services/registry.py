"""Process-wide service instances, built on first use."""

from threading import Lock

from clinic.core import config
from clinic.services.leave_cascade import LeaveCascadeProcessor
from clinic.services.lifecycle import AppointmentLifecycle
from clinic.services.notifier import NotificationDispatcher, build_background_dispatcher
from clinic.services.refund_ledger import LoggingRefundLedger, RefundLedger
from clinic.services.scheduler import SweepScheduler
from clinic.services.sweeper import CancellationSweeper

_lock = Lock()
_instances: dict = {}


def _get_or_build(name: str, factory):
    instance = _instances.get(name)
    if instance is not None:
        return instance

    with _lock:
        if name not in _instances:
            _instances[name] = factory()
        return _instances[name]


def get_dispatcher() -> NotificationDispatcher:
    return _get_or_build('dispatcher', build_background_dispatcher)


def get_refund_ledger() -> RefundLedger:
    return _get_or_build('refund_ledger', LoggingRefundLedger)


def get_lifecycle() -> AppointmentLifecycle:
    dispatcher = get_dispatcher()
    refund_ledger = get_refund_ledger()
    return _get_or_build('lifecycle', lambda: AppointmentLifecycle(dispatcher, refund_ledger))


def get_sweeper() -> CancellationSweeper:
    lifecycle = get_lifecycle()
    return _get_or_build('sweeper', lambda: CancellationSweeper(lifecycle))


def get_leave_processor() -> LeaveCascadeProcessor:
    lifecycle = get_lifecycle()
    return _get_or_build('leave_processor', lambda: LeaveCascadeProcessor(lifecycle))


def get_sweep_scheduler() -> SweepScheduler:
    sweeper = get_sweeper()
    return _get_or_build('sweep_scheduler', lambda: SweepScheduler(sweeper, enabled=config.SWEEPER_ENABLED))


def shutdown() -> None:
    with _lock:
        scheduler = _instances.pop('sweep_scheduler', None)
        dispatcher = _instances.pop('dispatcher', None)
        _instances.clear()

    if scheduler is not None:
        scheduler.stop()
    if dispatcher is not None:
        dispatcher.shutdown()
