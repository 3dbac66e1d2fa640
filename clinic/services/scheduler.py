"""Background schedule for the cancellation sweeper.

Runs shortly after each session ends, hourly as a catch-up for previous days,
and logs the day's automatic cancellation stats at 23:59. All triggers use the
clinic time zone.
"""

import logging
from datetime import datetime, timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from clinic.core import config
from clinic.core.clock import clinic_now, clinic_timezone
from clinic.services.sweeper import CancellationSweeper, cancellation_stats

logger = logging.getLogger(__name__)


def _after_boundary(boundary, grace_minutes: int) -> tuple[int, int]:
    fire_at = datetime.combine(datetime.min.date(), boundary) + timedelta(minutes=grace_minutes)
    return fire_at.hour, fire_at.minute


class SweepScheduler:
    def __init__(self, sweeper: CancellationSweeper, enabled: bool = True, grace_minutes: int | None = None):
        self.sweeper = sweeper
        self.enabled = enabled
        self.grace_minutes = config.SWEEP_GRACE_MINUTES if grace_minutes is None else grace_minutes
        self.tz = clinic_timezone()
        self._scheduler: BackgroundScheduler | None = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if not self.enabled:
            logger.info('Sweep scheduler is disabled, skipping start')
            return

        if self.is_running:
            logger.warning('Sweep scheduler already running')
            return

        scheduler = BackgroundScheduler(timezone=self.tz)
        job_defaults = {'max_instances': 1, 'coalesce': True, 'replace_existing': True}

        morning_hour, morning_minute = _after_boundary(config.MORNING_SESSION_END, self.grace_minutes)
        scheduler.add_job(
            self.sweeper.run,
            CronTrigger(hour=morning_hour, minute=morning_minute, timezone=self.tz),
            id='morning_session_sweep',
            name='Morning session no-show sweep',
            **job_defaults,
        )

        afternoon_hour, afternoon_minute = _after_boundary(config.AFTERNOON_SESSION_END, self.grace_minutes)
        scheduler.add_job(
            self.sweeper.run,
            CronTrigger(hour=afternoon_hour, minute=afternoon_minute, timezone=self.tz),
            id='afternoon_session_sweep',
            name='Afternoon session no-show sweep',
            **job_defaults,
        )

        scheduler.add_job(
            self.sweeper.run,
            CronTrigger(minute=0, timezone=self.tz),
            id='hourly_catch_up_sweep',
            name='Hourly catch-up sweep',
            **job_defaults,
        )

        scheduler.add_job(
            self.log_daily_stats,
            CronTrigger(hour=23, minute=59, timezone=self.tz),
            id='daily_cancellation_stats',
            name='Daily cancellation stats',
            **job_defaults,
        )

        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            'Sweep scheduler started with timezone %s (morning=%02d:%02d, afternoon=%02d:%02d, hourly catch-up)',
            self.tz, morning_hour, morning_minute, afternoon_hour, afternoon_minute,
        )

    def stop(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info('Sweep scheduler stopped')
        self._scheduler = None

    def jobs(self) -> list[dict]:
        if self._scheduler is None:
            return []
        return [
            {'id': job.id, 'name': job.name, 'next_run_time': job.next_run_time}
            for job in self._scheduler.get_jobs()
        ]

    def log_daily_stats(self) -> None:
        db = self.sweeper.session_factory()
        try:
            stats = cancellation_stats(db, clinic_now().date())
        except Exception:
            logger.exception('Failed to compute daily cancellation stats')
            return
        finally:
            db.close()
        logger.info('Daily cancellation stats: %s', stats)
