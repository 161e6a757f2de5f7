import asyncio
import logging
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence

import pytz
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED, JobEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger

from api.alerts import alert_webhook
from api.metrics import metrics
from config import config
from config.utils import parse_clock_time
from monitoring.async_utils import cancel_and_wait
from strategy.errors import MissingBarData
from strategy.market_types import TIMEFRAMES
from strategy.pivots import calculate_ladder


logger = logging.getLogger(__name__)


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class SessionScheduler:
    """Exchange-local jobs for level recompute, the bar stream and end-of-day cleanup.

    Timing is delegated to an APScheduler ``AsyncIOScheduler`` with cron
    triggers in the session timezone. The job bodies are plain coroutines that
    read the injectable clock, so they can be driven directly.

    Jobs:
      - ``recompute_levels``: every ``recompute_interval_min`` from
        ``recompute_start`` to ``recompute_end``.
      - ``refresh_stale_levels``: every ``retry_interval_min``; recomputes only
        symbols without a ladder for today, until the session ends.
      - ``start_session``: at ``start``.
      - ``close_session``: at ``cleanup_at``; stops the stream, then cleans up.

    ``run`` also catches up once at launch, so a process started late still
    gets today's ladder and, inside the session, a running stream.
    """

    def __init__(self, symbols: Sequence[str], machine, price_source, order_manager, stream=None,
                 clock=None, session_cfg=None):
        session_cfg = session_cfg if session_cfg is not None else config.section('session')
        self.symbols = list(symbols)
        self.machine = machine
        self.price_source = price_source
        self.order_manager = order_manager
        self.stream = stream
        self.clock = clock or SystemClock()

        self.timezone = pytz.timezone(session_cfg.get('timezone', 'America/New_York'))
        self.weekdays_only = bool(session_cfg.get('weekdays_only', True))
        self.recompute_start = parse_clock_time(session_cfg.get('recompute_start'), '08:00')
        self.recompute_end = parse_clock_time(session_cfg.get('recompute_end'), '08:45')
        self.recompute_interval = max(1, int(session_cfg.get('recompute_interval_min', 15)))
        self.retry_interval = max(1, int(session_cfg.get('retry_interval_min', 5)))
        self.session_start = parse_clock_time(session_cfg.get('start'), '09:44')
        self.session_end = parse_clock_time(session_cfg.get('end'), '16:00')
        self.cleanup_at = parse_clock_time(session_cfg.get('cleanup_at'), '15:58')
        self.cleanup_settle_s = float(session_cfg.get('cleanup_settle_s', 10))
        self.misfire_grace_s = int(session_cfg.get('misfire_grace_s', 60))

        self._stream_task: Optional[asyncio.Task] = None
        self._ladder_dates: Dict[str, date] = {}
        self._stopped = asyncio.Event()

        self._scheduler = AsyncIOScheduler(
            timezone=self.timezone,
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': self.misfire_grace_s,
            },
        )
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)
        self._register_jobs()

    @property
    def day_of_week(self) -> str:
        return 'mon-fri' if self.weekdays_only else '*'

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def jobs(self):
        return self._scheduler.get_jobs()

    def local_now(self) -> datetime:
        return self.clock.now().astimezone(self.timezone)

    def is_trading_day(self, local: datetime) -> bool:
        return not self.weekdays_only or local.weekday() < 5

    def in_session(self, moment: Optional[datetime] = None) -> bool:
        local = (moment or self.clock.now()).astimezone(self.timezone)
        return self.is_trading_day(local) and self.session_start <= local.time() < self.session_end

    def stale_symbols(self, local: Optional[datetime] = None) -> List[str]:
        today = (local or self.local_now()).date()
        return [symbol for symbol in self.symbols if self._ladder_dates.get(symbol) != today]

    async def recompute_levels(self, symbols: Optional[Iterable[str]] = None) -> Dict[str, bool]:
        """Recompute ladders. Returns ``{symbol: replaced}`` for symbols that succeeded.

        Only successful symbols count as done for today; the rest stay stale and
        are picked up by ``refresh_stale_levels``.
        """
        targets = list(symbols) if symbols is not None else list(self.symbols)
        results: Dict[str, bool] = {}
        computed_at = self.clock.now()
        today = self.local_now().date()
        for symbol in targets:
            try:
                bars = await self._fetch_bars(symbol)
                ladder = calculate_ladder(bars, symbol, computed_at)
                results[symbol] = await self.machine.apply_ladder(symbol, ladder)
            except MissingBarData as exc:
                metrics.record_recompute('missing_data')
                logger.warning("Skipping %s this recompute cycle: %s", symbol, exc)
                continue
            except Exception as exc:
                metrics.record_recompute('error')
                logger.error("Recompute failed for %s: %s", symbol, exc)
                continue
            self._ladder_dates[symbol] = today
            metrics.record_recompute('replaced' if results[symbol] else 'unchanged')
        logger.info(
            "Level recompute finished: %s replaced, %s unchanged, %s skipped",
            sum(1 for replaced in results.values() if replaced),
            sum(1 for replaced in results.values() if not replaced),
            len(targets) - len(results),
        )
        return results

    async def refresh_stale_levels(self) -> Dict[str, bool]:
        """Retry symbols still lacking today's ladder, between recompute start and session end."""
        local = self.local_now()
        if not self.is_trading_day(local):
            return {}
        if not self.recompute_start <= local.time() < self.session_end:
            return {}
        stale = self.stale_symbols(local)
        if not stale:
            return {}
        logger.info("Retrying level recompute for %s", ", ".join(stale))
        return await self.recompute_levels(stale)

    async def start_session(self) -> bool:
        """Start consuming bars if the session is open. Returns True when the stream is running."""
        if self.stream is None or not self.in_session():
            return False
        if self._stream_task is not None and not self._stream_task.done():
            return True
        logger.info("Trading session open; starting bar stream")
        self._stream_task = asyncio.create_task(self.stream.start())
        return True

    async def stop_stream(self) -> None:
        if self._stream_task is None:
            return
        await self.stream.stop()
        await cancel_and_wait([self._stream_task])
        self._stream_task = None

    async def end_of_day_cleanup(self) -> bool:
        """Cancel everything, let cancels settle, then flatten. Best effort; returns overall success."""
        ok = True
        try:
            await self.order_manager.cancel_all_orders()
        except Exception as exc:
            ok = False
            logger.error("End-of-day cancel-all failed: %s", exc)
            await alert_webhook.cleanup_alert('cancel_all_orders', str(exc))

        await self.clock.sleep(self.cleanup_settle_s)

        try:
            await self.order_manager.close_all_positions()
        except Exception as exc:
            ok = False
            logger.error("End-of-day close-all failed: %s", exc)
            await alert_webhook.cleanup_alert('close_all_positions', str(exc))

        metrics.record_cleanup('ok' if ok else 'failed')
        logger.info("End-of-day cleanup finished (ok=%s)", ok)
        return ok

    async def close_session(self) -> bool:
        await self.stop_stream()
        return await self.end_of_day_cleanup()

    async def catch_up(self) -> None:
        """Bring a freshly started process up to date with the current clock."""
        await self.refresh_stale_levels()
        if self.in_session():
            await self.start_session()

    async def run(self) -> None:
        self._stopped.clear()
        self._scheduler.start()
        logger.info(
            "Scheduler running: recompute %s-%s every %smin, session %s-%s, cleanup %s (%s)",
            self.recompute_start.strftime('%H:%M'),
            self.recompute_end.strftime('%H:%M'),
            self.recompute_interval,
            self.session_start.strftime('%H:%M'),
            self.session_end.strftime('%H:%M'),
            self.cleanup_at.strftime('%H:%M'),
            self.timezone.zone,
        )
        try:
            await self.catch_up()
            await self._stopped.wait()
        finally:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            await self.stop_stream()

    async def stop(self) -> None:
        # run() shuts the job scheduler down once it wakes
        self._stopped.set()
        await self.stop_stream()

    def _register_jobs(self) -> None:
        self._scheduler.add_job(
            self.recompute_levels,
            trigger=self._recompute_trigger(),
            id='recompute_levels',
            name='Pivot level recompute',
            replace_existing=True,
        )
        self._scheduler.add_job(
            self.refresh_stale_levels,
            trigger=CronTrigger(day_of_week=self.day_of_week, minute=f'*/{self.retry_interval}',
                                timezone=self.timezone),
            id='refresh_stale_levels',
            name='Stale level retry',
            replace_existing=True,
        )
        self._scheduler.add_job(
            self.start_session,
            trigger=self._daily_trigger(self.session_start),
            id='start_session',
            name='Session start',
            replace_existing=True,
        )
        self._scheduler.add_job(
            self.close_session,
            trigger=self._daily_trigger(self.cleanup_at),
            id='close_session',
            name='End-of-day cleanup',
            replace_existing=True,
        )

    def _daily_trigger(self, at) -> CronTrigger:
        return CronTrigger(day_of_week=self.day_of_week, hour=at.hour, minute=at.minute,
                           second=at.second, timezone=self.timezone)

    def _recompute_trigger(self):
        # Slots are start + k * interval up to end; grouped by hour into cron minute lists
        start = datetime.combine(date.min, self.recompute_start)
        end = datetime.combine(date.min, self.recompute_end)
        minutes_by_hour: Dict[int, List[str]] = defaultdict(list)
        slot = start
        while slot <= end:
            minutes_by_hour[slot.hour].append(str(slot.minute))
            slot += timedelta(minutes=self.recompute_interval)
        triggers = [
            CronTrigger(day_of_week=self.day_of_week, hour=hour, minute=','.join(minutes),
                        timezone=self.timezone)
            for hour, minutes in sorted(minutes_by_hour.items())
        ]
        return triggers[0] if len(triggers) == 1 else OrTrigger(triggers)

    def _on_job_error(self, event: JobEvent) -> None:
        logger.error("Scheduled job %s failed: %s", event.job_id, event.exception)

    def _on_job_missed(self, event: JobEvent) -> None:
        logger.warning("Scheduled job %s missed its run time", event.job_id)

    async def _fetch_bars(self, symbol: str):
        fetched = await asyncio.gather(
            *(self.price_source.get_last_bar(symbol, timeframe) for timeframe in TIMEFRAMES)
        )
        return dict(zip(TIMEFRAMES, fetched))
