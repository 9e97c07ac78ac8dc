# Author: PB
# Maintainer: PB
# Original date: 2025.06.13
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/core/driver.py

"""Run every configured source through the reconciler, isolating failures."""

from dataclasses import dataclass, field
from typing import Iterable, Optional

import loguru

from snapmirror.config.manager import BackupConfig
from snapmirror.config.sources import SourceConfig
from snapmirror.core.models import ReconcileMode, ReconcileOutcome, SourceKind
from snapmirror.core.reconciler import Reconciler
from snapmirror.system.exceptions import SnapMirrorError

logger = loguru.logger


@dataclass
class SourceResult:
    source_kind: SourceKind
    source_name: str
    outcome: Optional[ReconcileOutcome] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @property
    def skipped(self) -> bool:
        return self.ok and self.outcome is not None and self.outcome.mode is ReconcileMode.SKIP


@dataclass
class RunSummary:
    results: list[SourceResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok and not r.skipped)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)

    @property
    def failures(self) -> list[SourceResult]:
        return [r for r in self.results if not r.ok]

    def to_dict(self) -> dict:
        return {
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "sources": [
                {
                    "kind": r.source_kind.value,
                    "name": r.source_name,
                    "mode": r.outcome.mode.value if r.outcome else None,
                    "head": r.outcome.head if r.outcome else None,
                    "baseline": r.outcome.baseline if r.outcome else None,
                    "error_kind": r.error_kind,
                    "error": r.error_message,
                }
                for r in self.results
            ],
        }


def select_sources(config: BackupConfig, only: Optional[Iterable[str]] = None) -> list[SourceConfig]:
    """Configured sources in run order (datasets, then restic), optionally filtered by name."""
    sources = config.sources
    if only:
        wanted = set(only)
        sources = [s for s in sources if s.source_name in wanted]
    return sources


def run_source(reconciler: Reconciler, source: SourceConfig) -> SourceResult:
    result = SourceResult(source.kind, source.source_name)
    try:
        result.outcome = reconciler.reconcile(source)
    except SnapMirrorError as e:
        logger.error(f"{e}")
        logger.warning(f"Skipping {source.kind.value} '{source.source_name}'")
        result.error_kind = e.kind
        result.error_message = str(e)
    except Exception as e:
        # One broken source must not stop the run
        logger.exception(f"Unexpected error while backing up '{source.source_name}'")
        result.error_kind = "UnexpectedError"
        result.error_message = str(e) or type(e).__name__
    return result


def run_backups(config: BackupConfig, reconciler: Reconciler,
                only: Optional[Iterable[str]] = None) -> RunSummary:
    """Reconcile each configured source once, one after another."""
    sources = select_sources(config, only)
    logger.info(f"Processing {len(config.datasets)} dataset(s) and "
                f"{len(config.restic)} restic repositor{'y' if len(config.restic) == 1 else 'ies'}")

    summary = RunSummary()
    for source in sources:
        summary.results.append(run_source(reconciler, source))

    logger.info(f"Done: {summary.succeeded} backed up, {summary.skipped} unchanged, "
                f"{summary.failed} failed")
    return summary
