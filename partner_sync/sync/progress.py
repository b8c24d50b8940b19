"""Typed progress reporting for long-running sync steps."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Callable

ProgressObserver = Callable[["ProgressEvent"], None]


@dataclass(frozen=True)
class ProgressEvent:
    current: int
    total: int
    stage: str
    label: str = ""

    @property
    def percent(self) -> float:
        if not self.total:
            return 0.0
        return round(self.current / self.total * 100, 1)

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["percent"] = self.percent
        return payload


class ProgressChannel:
    """
    Fan-out of progress events to subscribed observers.

    Observers must not block; an observer raising is logged and skipped so a
    broken progress consumer never fails a sync.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._observers: list[ProgressObserver] = []
        self.logger = logger or logging.getLogger(__name__)

    def subscribe(self, observer: ProgressObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def publish(self, event: ProgressEvent) -> None:
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:  # pragma: no cover - observer bugs are not sync failures
                self.logger.exception("Progress observer failed for stage %s", event.stage)

    def emit(self, stage: str, current: int, total: int, label: str = "") -> None:
        self.publish(ProgressEvent(current=current, total=total, stage=stage, label=label))
