"""Telemetry sinks for per-cycle reports."""

import logging
from abc import ABC, abstractmethod

import orjson

from .journal_sqlite import EventJournalSQLite
from .types import CycleOutcome, CycleReport

logger = logging.getLogger(__name__)


class TelemetrySink(ABC):
    """Receives one CycleReport per cycle. Must not raise."""

    @abstractmethod
    def emit(self, report: CycleReport) -> None:
        ...


class LogTelemetrySink(TelemetrySink):
    """Logs reports as compact JSON lines."""

    def __init__(self, logger_name: str = "poly_5min_bot.cycles"):
        self._log = logging.getLogger(logger_name)

    def emit(self, report: CycleReport) -> None:
        line = orjson.dumps(report.to_dict()).decode()
        if report.outcome == CycleOutcome.HALTED:
            self._log.critical(line)
        elif report.outcome == CycleOutcome.FAILED:
            self._log.error(line)
        elif report.error:
            self._log.warning(line)
        else:
            self._log.info(line)


class JournalTelemetrySink(TelemetrySink):
    """Stores reports in the SQLite journal."""

    def __init__(self, journal: EventJournalSQLite):
        self._journal = journal

    def emit(self, report: CycleReport) -> None:
        self._journal.append_cycle(report)


class MultiSink(TelemetrySink):
    """Fans a report out to several sinks."""

    def __init__(self, *sinks: TelemetrySink):
        self.sinks = list(sinks)

    def emit(self, report: CycleReport) -> None:
        for sink in self.sinks:
            try:
                sink.emit(report)
            except Exception as e:
                logger.error(f"Telemetry sink {type(sink).__name__} failed: {e}")
