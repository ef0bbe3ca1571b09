"""
Reconciliation pass between the remote calendars and the local cache.

A pass runs in a fixed order: push deletions, pull, merge, detect remote
removals, push pending writes, prune.  Each step logs and counts its own
failures so later steps still run.
"""

import logging

from caldav_calendar_sync import codec
from caldav_calendar_sync.db import CacheDatabase
from caldav_calendar_sync.directory import CalendarDirectory
from caldav_calendar_sync.gateway import MultiCalendarGateway
from caldav_calendar_sync.models import CachedEvent
from caldav_calendar_sync.models import CalendarSyncError
from caldav_calendar_sync.models import SyncConfig
from caldav_calendar_sync.models import SyncReport
from caldav_calendar_sync.models import SyncStatus
from caldav_calendar_sync.models import Tombstone

SECONDS_PER_DAY = 86400


def push_deletions(
    report: SyncReport,
    logger,
    tombstones: list[Tombstone],
    gateway: MultiCalendarGateway,
    cache: CacheDatabase,
    directory: CalendarDirectory,
):
    """Propagate local deletions.

    A tombstone is marked synced whatever the remote outcome; a failed delete
    is only logged.  Tombstones with no known calendar have nothing to delete
    remotely.
    """
    for tombstone in tombstones:
        calendar_name = tombstone.calendar_name
        if calendar_name is None or calendar_name not in directory:
            logger.debug(f"Tombstone {tombstone.id} has no remote location; marking synced")
            cache.mark_tombstone_synced(tombstone.id)
            continue

        filename = tombstone.caldav_filename or codec.event_filename(tombstone.id)
        if gateway.delete(calendar_name, filename):
            report.deletions_pushed += 1
            logger.debug(f"Deleted {filename} from '{calendar_name}'")
        else:
            logger.warning(
                f"Remote delete of {tombstone.id} from '{calendar_name}' failed; "
                f"marking tombstone synced anyway"
            )
        cache.mark_tombstone_synced(tombstone.id)


def pull_calendars(
    report: SyncReport,
    logger,
    gateway: MultiCalendarGateway,
    directory: CalendarDirectory,
) -> tuple[list[CachedEvent], set[str]]:
    """Fetch every calendar in directory order.

    Returns the pulled rows and the names of the calendars that were fetched
    successfully.  A failing calendar is recorded with a count of -1.
    """
    pulled: list[CachedEvent] = []
    succeeded: set[str] = set()
    for calendar in directory:
        try:
            results = gateway.fetch_all(calendar.name)
        except CalendarSyncError as e:
            logger.error(f"Failed to pull calendar '{calendar.name}': {e}")
            report.calendar_counts[calendar.name] = -1
            report.failed_calendars.append(calendar.name)
            report.errors += 1
            continue
        except Exception as e:
            logger.error(f"Unexpected error pulling '{calendar.name}': {e}", exc_info=True)
            report.calendar_counts[calendar.name] = -1
            report.failed_calendars.append(calendar.name)
            report.errors += 1
            continue

        for event, filename in results:
            pulled.append(
                CachedEvent(
                    event=event,
                    calendar_name=calendar.name,
                    calendar_path=calendar.path,
                    caldav_filename=filename,
                    sync_status=SyncStatus.SYNCED,
                )
            )
        report.calendar_counts[calendar.name] = len(results)
        succeeded.add(calendar.name)
        logger.info(f"Pulled {len(results)} event(s) from '{calendar.name}'")

    report.pulled = len(pulled)
    return pulled, succeeded


def merge_pulled(
    report: SyncReport,
    logger,
    pulled: list[CachedEvent],
    cache: CacheDatabase,
):
    """Write pulled rows into the cache.

    Rows with an unsynced tombstone stay deleted and rows with an unpushed
    local write keep the local version.
    """
    tombstoned = cache.unsynced_tombstone_ids()
    pending = {row.id for row in cache.list_pending_writes()}

    to_write = []
    for row in pulled:
        if row.id in tombstoned:
            logger.debug(f"Skipping {row.id}: deleted locally, delete not yet pushed")
            report.skipped_tombstoned += 1
            continue
        if row.id in pending:
            logger.debug(f"Skipping {row.id}: local write not yet pushed")
            report.skipped_pending += 1
            continue
        to_write.append(row)

    # A local write landing after the snapshot above is still honoured by the
    # upsert itself.
    written = cache.upsert_many(to_write, preserve_metadata=True)
    if written < len(to_write):
        logger.debug(f"{len(to_write) - written} pulled row(s) yielded to newer local changes")
    report.merged = written


def detect_remote_deletions(
    report: SyncReport,
    logger,
    cached_before: list[CachedEvent],
    pulled: list[CachedEvent],
    succeeded: set[str],
    cache: CacheDatabase,
):
    """Drop cached rows that disappeared from a successfully pulled calendar."""
    pulled_ids = {row.id for row in pulled}
    tombstoned = cache.unsynced_tombstone_ids()

    for row in cached_before:
        if row.id in pulled_ids or row.id in tombstoned:
            continue
        if row.sync_status == SyncStatus.PENDING:
            continue
        if row.calendar_name not in succeeded:
            continue
        if not cache.track_remote_deletion(row.id):
            continue
        report.remote_deleted += 1
        logger.debug(f"Event {row.id} removed remotely from '{row.calendar_name}'")


def push_pending_writes(
    report: SyncReport,
    logger,
    rows: list[CachedEvent],
    gateway: MultiCalendarGateway,
    cache: CacheDatabase,
    default_calendar: str,
):
    """Push locally modified rows; failures stay pending for the next pass.

    One row failing, however it fails, does not hold up the rows after it.
    """
    for row in rows:
        calendar_name = row.calendar_name or default_calendar
        try:
            pushed = gateway.update(calendar_name, row.event, row.caldav_filename)
            if pushed:
                cache.mark_synced(
                    row.id,
                    caldav_filename=codec.event_filename(row.id),
                    expected_modified=row.local_modified,
                )
        except CalendarSyncError as e:
            logger.error(f"Push of {row.id} to '{calendar_name}' failed: {e}")
            pushed = False
        except Exception as e:
            logger.error(f"Unexpected error pushing {row.id}: {e}", exc_info=True)
            pushed = False

        if pushed:
            report.writes_pushed += 1
            logger.debug(f"Pushed {row.id} to '{calendar_name}'")
        else:
            report.write_failures += 1
            logger.warning(f"Push of {row.id} to '{calendar_name}' failed; left pending")


def prune(report: SyncReport, logger, cache: CacheDatabase, config: SyncConfig, now: float):
    rows = cache.prune_stale_rows(now - config.row_retention_days * SECONDS_PER_DAY)
    tombstones = cache.prune_synced_tombstones(
        now - config.tombstone_retention_days * SECONDS_PER_DAY
    )
    if rows or tombstones:
        logger.info(f"Pruned {rows} stale row(s) and {tombstones} old tombstone(s)")


class SyncReconciler:
    """Runs reconciliation passes; every pass goes through the shared guard."""

    def __init__(
        self,
        gateway: MultiCalendarGateway,
        cache: CacheDatabase,
        directory: CalendarDirectory,
        guard,
        config: SyncConfig,
    ):
        self.gateway = gateway
        self.cache = cache
        self.directory = directory
        self.guard = guard
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.last_report: SyncReport | None = None

    def force_sync(self) -> SyncReport | None:
        """Run a full pass now; returns None when another pass is in progress."""
        ran, report = self.guard.run(self._run_pass)
        if not ran:
            self.logger.info("Sync already in progress; skipping")
            return None
        return report

    def push_event(self, event_id: str) -> SyncReport | None:
        """Push the pending write or unsynced deletion of one event.

        Skipped (returns None) when a pass is running; that pass or the next
        one flushes it.
        """
        ran, report = self.guard.run(lambda: self._push_single(event_id))
        if not ran:
            self.logger.debug(f"Sync busy; deferring push of {event_id}")
            return None
        return report

    def _step(self, report: SyncReport, name: str, fn, *args):
        try:
            return fn(report, self.logger, *args)
        except CalendarSyncError as e:
            self.logger.error(f"Sync step '{name}' failed: {e}")
        except Exception as e:
            self.logger.error(f"Unexpected error in sync step '{name}': {e}", exc_info=True)
        report.errors += 1
        return None

    def _run_pass(self) -> SyncReport:
        report = SyncReport()
        self.logger.info("Starting sync pass...")

        try:
            tombstones = self.cache.list_unsynced_tombstones()
        except CalendarSyncError as e:
            self.logger.error(f"Could not read tombstones: {e}")
            report.errors += 1
            tombstones = []
        if tombstones:
            self.logger.info(f"Pushing {len(tombstones)} local deletion(s)...")
        self._step(
            report, "push deletions", push_deletions,
            tombstones, self.gateway, self.cache, self.directory,
        )

        try:
            cached_before = self.cache.get_all_rows()
        except CalendarSyncError as e:
            self.logger.error(f"Could not snapshot cache: {e}")
            report.errors += 1
            cached_before = None

        pulled, succeeded = pull_calendars(report, self.logger, self.gateway, self.directory)
        self._step(report, "merge", merge_pulled, pulled, self.cache)
        if cached_before is not None:
            self._step(
                report, "detect remote deletions", detect_remote_deletions,
                cached_before, pulled, succeeded, self.cache,
            )

        try:
            pending = self.cache.list_pending_writes()
        except CalendarSyncError as e:
            self.logger.error(f"Could not read pending writes: {e}")
            report.errors += 1
            pending = []
        if pending:
            self.logger.info(f"Pushing {len(pending)} local change(s)...")
        self._step(
            report, "push writes", push_pending_writes,
            pending, self.gateway, self.cache, self.config.default_calendar,
        )

        now = self.cache.clock()
        self._step(report, "prune", prune, self.cache, self.config, now)

        try:
            self.cache.mark_sync_completed(now)
        except CalendarSyncError as e:
            self.logger.error(f"Could not record sync completion: {e}")
            report.errors += 1

        self.last_report = report
        self.logger.info(
            f"Sync pass finished: {report.merged} merged, {report.writes_pushed} pushed, "
            f"{report.deletions_pushed} deleted, {report.remote_deleted} removed remotely, "
            f"{report.errors} error(s)"
        )
        return report

    def _push_single(self, event_id: str) -> SyncReport:
        report = SyncReport()
        tombstone = self.cache.get_tombstone(event_id)
        if tombstone is not None and not tombstone.synced_to_remote:
            self._step(
                report, "push deletion", push_deletions,
                [tombstone], self.gateway, self.cache, self.directory,
            )
            return report

        row = self.cache.get(event_id)
        if row is not None and row.sync_status == SyncStatus.PENDING:
            self._step(
                report, "push write", push_pending_writes,
                [row], self.gateway, self.cache, self.config.default_calendar,
            )
        return report
