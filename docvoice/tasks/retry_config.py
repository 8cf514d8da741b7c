#!/usr/bin/env python3
"""Celery retry policy for document conversion.

Countdowns follow a delay ladder (``CONVERSION_RETRY_DELAYS``, 60/300/900 s by
default) with ±20 % jitter. :class:`ConversionTaskWithRetry` caps attempts at
``CONVERSION_MAX_ATTEMPTS`` and records the permanent failure once Celery
gives up.
"""

import logging
import random
from typing import Any

from celery import Task

from docvoice.config import settings

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAYS: list[int] = [60, 300, 900]


def _parse_delay_string(value: str) -> list[int]:
    return [int(v.strip()) for v in value.split(",") if v.strip()]


def compute_countdown(retries: int, base_delays: list[int] | None = None, jitter: bool = True) -> int:
    """Seconds to wait before retry number *retries* (0-based).

    Past the end of the ladder the last delay doubles per extra retry.
    """
    delays = base_delays if base_delays is not None else DEFAULT_RETRY_DELAYS

    if not delays:
        base = 60
    elif retries < len(delays):
        base = delays[retries]
    else:
        base = delays[-1] * (2 ** (retries - len(delays) + 1))

    if jitter:
        base = int(base * random.uniform(0.8, 1.2))  # noqa: S311

    return max(base, 1)


class BaseTaskWithRetry(Task):
    """Task base that retries any exception on the jittered delay ladder."""

    autoretry_for = (Exception,)
    max_retries: int = 3
    retry_kwargs: dict = {"max_retries": 3}
    # None reads CONVERSION_RETRY_DELAYS
    retry_delays: list[int] | None = None
    retry_jitter: bool = True

    def retry(
        self,
        args: Any = None,
        kwargs: Any = None,
        exc: BaseException | None = None,
        throw: bool = True,
        eta: Any = None,
        countdown: int | None = None,
        max_retries: int | None = None,
        **options: Any,
    ) -> Any:
        if countdown is None and eta is None:
            countdown = self.next_countdown()
            logger.debug(f"[{self.request.id}] Scheduling retry {self.request.retries + 1} of {self.name} in {countdown}s")

        return super().retry(
            args=args,
            kwargs=kwargs,
            exc=exc,
            throw=throw,
            eta=eta,
            countdown=countdown,
            max_retries=max_retries,
            **options,
        )

    def next_countdown(self) -> int:
        return compute_countdown(self.request.retries, self._effective_retry_delays(), self.retry_jitter)

    def _effective_retry_delays(self) -> list[int]:
        if self.retry_delays is not None:
            return self.retry_delays

        raw = settings.conversion_retry_delays
        if raw:
            try:
                return _parse_delay_string(raw)
            except ValueError:
                logger.warning(f"Ignoring malformed CONVERSION_RETRY_DELAYS value: {raw!r}")

        return DEFAULT_RETRY_DELAYS


class ConversionTaskWithRetry(BaseTaskWithRetry):
    """Retry policy for the document conversion task.

    A document gets ``conversion_max_attempts`` attempts in total, i.e. one
    fewer retry.  When Celery gives up, :meth:`on_failure` records the
    permanent failure on the document and in the queue ledger.
    """

    max_retries: int = max(settings.conversion_max_attempts - 1, 0)
    retry_kwargs: dict = {"max_retries": max(settings.conversion_max_attempts - 1, 0)}
    time_limit: int = settings.conversion_job_timeout
    soft_time_limit: int = max(settings.conversion_job_timeout - 60, 1)

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        document_id = args[0] if args else kwargs.get("document_id")
        total_attempts = self.request.retries + 1
        logger.error(f"[{task_id}] Conversion of document {document_id} failed permanently: {exc}")

        # Imported lazily: the converter pulls in the TTS and storage stacks
        from docvoice.database import SessionLocal
        from docvoice.tasks.process_document import get_converter
        from docvoice.utils import queue_ledger

        if document_id is not None:
            try:
                get_converter().mark_permanently_failed(document_id, str(exc), total_attempts)
            except Exception as converter_exc:
                logger.error(f"[{task_id}] Could not build converter to record failure: {converter_exc}")
        try:
            with SessionLocal() as db:
                queue_ledger.fail(db, task_id, document_id, settings.conversion_queue, repr(exc))
        except Exception as ledger_exc:
            logger.error(f"[{task_id}] Could not move work unit to failed jobs: {ledger_exc}")
