"""Core sync engine for whole-mirror reconciliation."""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from rich.progress import Progress, SpinnerColumn, TextColumn

from .comparator import ResourceComparator, ResourceStatus, SyncAction, SyncDecision
from .context import SyncContext
from .modes import SyncDirection
from .operations import SyncOperations
from .scanner import ResourceScanner, ScanResult, checkpoint
from .state import ResourceKey

logger = logging.getLogger(__name__)


class MergeChoice(str, Enum):
    """Which side wins a manual merge."""

    LOCAL = "local"
    REMOTE = "remote"


@dataclass
class SyncSummary:
    """Counts shown to the user before a direction is chosen."""

    local_only: int = 0
    remote_only: int = 0
    changed: int = 0
    unchanged: int = 0
    unreadable: int = 0

    @property
    def is_clean(self) -> bool:
        return self.local_only == 0 and self.remote_only == 0 and self.changed == 0

    def to_dict(self) -> dict[str, int]:
        return {
            "localOnly": self.local_only,
            "remoteOnly": self.remote_only,
            "changed": self.changed,
            "unchanged": self.unchanged,
            "unreadable": self.unreadable,
        }


@dataclass
class SyncPlan:
    """Result of a dry run: what exists where, and nothing touched yet."""

    scan: ScanResult
    decisions: list[SyncDecision]
    summary: SyncSummary


@dataclass
class SyncReport:
    """Outcome of applying a plan."""

    direction: SyncDirection
    pushed: list[ResourceKey] = field(default_factory=list)
    pulled: list[ResourceKey] = field(default_factory=list)
    merges: list[ResourceKey] = field(default_factory=list)
    moved: list[ResourceKey] = field(default_factory=list)
    skipped: int = 0
    errors: list[tuple[ResourceKey, str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "direction": self.direction.value,
            "pushed": [str(k) for k in self.pushed],
            "pulled": [str(k) for k in self.pulled],
            "merges": [str(k) for k in self.merges],
            "moved": [str(k) for k in self.moved],
            "skipped": self.skipped,
            "errors": [{"resource": str(k), "error": e} for k, e in self.errors],
        }


MergeHandler = Callable[[SyncDecision], Awaitable[Optional[MergeChoice]]]
DirectionChooser = Callable[
    [SyncSummary],
    Union[Optional[SyncDirection], Awaitable[Optional[SyncDirection]]],
]


class SyncEngine:
    """Core sync engine that reconciles a mirror with its server."""

    def __init__(
        self,
        context: SyncContext,
        merge_handler: Optional[MergeHandler] = None,
    ):
        """Initialize sync engine.

        Args:
            context: Engine context of the mirror
            merge_handler: Called for each resource that needs a manual
                merge. It may return a choice to apply right away. Defaults
                to writing ``.merge`` scratch files and leaving both sides
                untouched.
        """
        self.context = context
        self.output = context.output
        self.operations = SyncOperations(context)
        self.scanner = ResourceScanner(context.store, context.tree_cache)
        self.merge_handler = merge_handler or self.write_merge_scratch

    # =========================
    # Phase 1: dry run
    # =========================

    async def plan(self, cancel: Optional[asyncio.Event] = None) -> SyncPlan:
        """Scan both sides and count differences without changing anything.

        Args:
            cancel: Optional event; once set, scanning stops at the next
                checkpoint with ``SyncCancelledError``

        Returns:
            SyncPlan with classification-only decisions and a summary
        """
        start = time.time()
        if self.output.quiet or self.output.json_output:
            scan = await self.scanner.scan(cancel)
        else:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                transient=True,
            ) as progress:
                progress.add_task("Scanning mirror and server...", total=None)
                scan = await self.scanner.scan(cancel)

        comparator = ResourceComparator(direction=None)
        decisions: list[SyncDecision] = []
        for key in comparator.keys(scan.local, scan.remote, scan.moved):
            await checkpoint(cancel)
            decisions.append(
                comparator.compare_key(key, scan.local, scan.remote, scan.moved)
            )

        summary = self._summarize(decisions, len(scan.errors))
        logger.debug(f"Dry run took {time.time() - start:.2f}s: {summary.to_dict()}")
        return SyncPlan(scan=scan, decisions=decisions, summary=summary)

    def _summarize(self, decisions: list[SyncDecision], unreadable: int) -> SyncSummary:
        summary = SyncSummary(unreadable=unreadable)
        for decision in decisions:
            if decision.status == ResourceStatus.LOCAL_ONLY:
                summary.local_only += 1
            elif decision.status == ResourceStatus.REMOTE_ONLY:
                summary.remote_only += 1
            elif decision.status == ResourceStatus.CHANGED:
                summary.changed += 1
            else:
                summary.unchanged += 1
        return summary

    def display_plan(self, plan: SyncPlan) -> None:
        """Display the dry-run summary to the user."""
        if self.output.quiet or self.output.json_output:
            return
        summary = plan.summary
        self.output.info("Sync plan:")
        self.output.info(f"  ↑ Local only: {summary.local_only} resource(s)")
        self.output.info(f"  ↓ Remote only: {summary.remote_only} resource(s)")
        self.output.info(f"  ≠ Changed: {summary.changed} resource(s)")
        if summary.unchanged:
            self.output.info(f"  = Unchanged: {summary.unchanged} resource(s)")
        for key, error in plan.scan.errors.items():
            self.output.warning(f"  Skipping {key}: {error}")
        self.output.print("")

    # =========================
    # Phase 2: apply
    # =========================

    async def apply(
        self,
        plan: SyncPlan,
        direction: SyncDirection,
        cancel: Optional[asyncio.Event] = None,
    ) -> SyncReport:
        """Execute a dry-run plan in the given direction.

        Each resource is handled on its own: a failure is recorded in the
        report and the remaining resources are still processed.
        """
        await checkpoint(cancel)
        comparator = ResourceComparator(direction)
        decisions = comparator.compare(plan.scan.local, plan.scan.remote, plan.scan.moved)
        report = SyncReport(direction=direction)

        for decision in decisions:
            try:
                await self._execute_decision(decision, report)
            except Exception as e:
                logger.debug(f"Failed to sync {decision.key}", exc_info=True)
                report.errors.append((decision.key, str(e)))
                self.output.error(f"Error syncing {decision.key}: {e}")

        if direction.allows_pull and plan.scan.snapshot is not None:
            try:
                self.operations.write_group_metas(plan.scan.snapshot)
            except OSError as e:
                self.output.warning(f"Could not write group metadata: {e}")

        for key, error in plan.scan.errors.items():
            report.errors.append((key, error))

        self.context.remember_session()
        return report

    async def _execute_decision(self, decision: SyncDecision, report: SyncReport) -> None:
        local_meta = decision.local.meta if decision.local else None
        if decision.moved_from is not None and decision.action != SyncAction.SKIP:
            local_meta = self.operations.adopt_remote_rename(
                decision.moved_from, decision.key
            )
            report.moved.append(decision.key)

        if decision.action == SyncAction.PUSH and decision.local:
            logger.debug(f"Pushing {decision.key}: {decision.reason}")
            await self.operations.push(decision.key, decision.local.script, local_meta)
            report.pushed.append(decision.key)

        elif decision.action == SyncAction.PULL and decision.remote:
            logger.debug(f"Pulling {decision.key}: {decision.reason}")
            await self.operations.pull(decision.remote.info)
            report.pulled.append(decision.key)

        elif decision.action == SyncAction.MERGE:
            logger.debug(f"Manual merge needed for {decision.key}: {decision.reason}")
            report.merges.append(decision.key)
            choice = await self.merge_handler(decision)
            if choice is not None:
                await self.resolve_merge(decision.key, choice)

        else:
            report.skipped += 1

    async def reconcile(
        self,
        choose_direction: DirectionChooser,
        cancel: Optional[asyncio.Event] = None,
    ) -> Optional[SyncReport]:
        """Run a dry run, ask for a direction, then apply.

        Args:
            choose_direction: Receives the summary and returns the direction
                to apply, or None to skip
            cancel: Optional cancellation event for the dry run

        Returns:
            SyncReport, or None if there was nothing to do or the user skipped
        """
        plan = await self.plan(cancel)
        self.display_plan(plan)
        if plan.summary.is_clean:
            if not plan.scan.errors:
                self.output.success("Mirror is in sync")
            return None

        direction = choose_direction(plan.summary)
        if inspect.isawaitable(direction):
            direction = await direction
        if direction is None:
            self.output.info("Sync skipped")
            return None

        report = await self.apply(plan, direction, cancel)
        self.display_report(report)
        return report

    async def materialize(self) -> SyncReport:
        """Pull every remote resource into the mirror (initial population)."""
        self.context.store.ensure_type_dirs()
        plan = await self.plan()
        return await self.apply(plan, SyncDirection.PULL_ONLY)

    # =========================
    # Manual merges
    # =========================

    async def write_merge_scratch(self, decision: SyncDecision) -> Optional[MergeChoice]:
        """Default merge handler: leave the remote side next to the mirror."""
        if decision.remote is None:
            return None
        script_path, _ = self.context.store.write_merge_files(
            decision.key, decision.remote.script, decision.remote.meta
        )
        self.output.warning(
            f"Manual merge required for {decision.key}: {decision.reason}. "
            f"Remote version saved to {script_path}"
        )
        return None

    async def resolve_merge(self, key: ResourceKey, choice: MergeChoice) -> None:
        """Apply the user's merge choice and drop scratch files.

        Raises:
            MagicAPIError: If the push or pull fails; scratch files are kept
        """
        store = self.context.store
        if choice == MergeChoice.LOCAL:
            script = store.read_script(key)
            if script is None:
                raise FileNotFoundError(str(store.script_path(key)))
            await self.operations.push(key, script, store.read_meta(key))
        else:
            await self.operations.pull_by_key(key)
        store.clear_merge_files(key)
        logger.debug(f"Resolved merge of {key} with {choice.value} version")

    # =========================
    # Display
    # =========================

    def display_report(self, report: SyncReport) -> None:
        """Display sync summary."""
        if self.output.quiet or self.output.json_output:
            return
        self.output.print("")
        self.output.success("Sync complete!")
        total = len(report.pushed) + len(report.pulled)
        if total > 0:
            self.output.info(f"Total actions: {total}")
            if report.pushed:
                self.output.info(f"  Pushed: {len(report.pushed)}")
            if report.pulled:
                self.output.info(f"  Pulled: {len(report.pulled)}")
        if report.moved:
            self.output.info(f"Renamed to match the server: {len(report.moved)}")
        else:
            self.output.info("No changes applied")
        if report.merges:
            self.output.warning(f"Manual merge required: {len(report.merges)}")
        if report.errors:
            self.output.warning(f"Failed: {len(report.errors)}")
