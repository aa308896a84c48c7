"""
huddle.services.email_queue — Best-effort outbound email
=========================================================

An asyncio queue drained by one background worker.  Each job is sent
over SMTP on a worker thread.  A failed job is put back on the queue
after ``backoff_base * 2 ** (attempt - 1)`` seconds while the worker
moves on, so one unreachable mailbox never holds up the rest.  After
``max_attempts`` the job is dropped with an error log.  Callers never
see delivery errors.

:class:`NullEmailQueue` has the same surface and only logs; it is used
whenever email is disabled in ``config.yaml`` or no SMTP host is set.
"""

from __future__ import annotations

import asyncio
import logging
import os
import smtplib
from collections.abc import Callable
from dataclasses import dataclass, replace
from email.message import EmailMessage

from huddle.config import HuddleConfig
from huddle.services.notification_service import Delivery

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
BACKOFF_BASE_SECONDS = 2.0
SMTP_TIMEOUT = 15


@dataclass(frozen=True, slots=True)
class EmailJob:
    to: str
    subject: str
    body: str
    attempts: int = 0


Sender = Callable[[EmailJob], None]


def job_for_delivery(delivery: Delivery, app_name: str) -> EmailJob | None:
    """Email version of a notification, or ``None`` if the user opted out."""
    if not delivery.email:
        return None
    payload = delivery.payload
    body = payload.get("message", "")
    if payload.get("link"):
        body += f"\n\n{os.getenv('FRONTEND_URL', '').rstrip('/')}{payload['link']}"
    return EmailJob(to=delivery.email, subject=f"{app_name}: new notification", body=body)


class SmtpSender:
    """Blocking SMTP send; credentials come from the environment."""

    def __init__(self, host: str, port: int, from_addr: str) -> None:
        self.host = host
        self.port = port
        self.from_addr = from_addr
        self.username = os.getenv("SMTP_USERNAME")
        self.password = os.getenv("SMTP_PASSWORD")

    def __call__(self, job: EmailJob) -> None:
        msg = EmailMessage()
        msg["Subject"] = job.subject
        msg["From"] = self.from_addr
        msg["To"] = job.to
        msg.set_content(job.body)
        with smtplib.SMTP(self.host, self.port, timeout=SMTP_TIMEOUT) as smtp:
            smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password or "")
            smtp.send_message(msg)


class EmailQueue:
    def __init__(
        self,
        sender: Sender,
        *,
        app_name: str = "Huddle",
        max_attempts: int = MAX_ATTEMPTS,
        backoff_base: float = BACKOFF_BASE_SECONDS,
    ) -> None:
        self._sender = sender
        self._app_name = app_name
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._queue: asyncio.Queue[EmailJob] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._worker: asyncio.Task | None = None
        self._retries: set[asyncio.TimerHandle] = set()
        # jobs enqueued but not yet sent or given up on
        self._unsettled = 0
        self._idle: asyncio.Event | None = None
        self.sent = 0
        self.failed = 0

    enabled = True

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._idle = asyncio.Event()
        self._idle.set()
        self._unsettled = 0
        self._worker = asyncio.create_task(self._run(), name="email-queue")
        logger.info("Email queue started")

    async def stop(self) -> None:
        if self._worker is None:
            return
        for handle in self._retries:
            handle.cancel()
        self._retries.clear()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Email queue stopped (sent=%d, failed=%d)", self.sent, self.failed)

    async def join(self) -> None:
        """Wait until every queued job is sent or given up on."""
        if self._idle is not None:
            await self._idle.wait()

    def enqueue(self, job: EmailJob) -> bool:
        """Queue *job* from any thread; ``False`` when the worker isn't running."""
        if self._loop is None or self._queue is None or not self.running:
            logger.warning("Email queue not running; dropping mail to %s", job.to)
            return False
        try:
            in_loop = asyncio.get_running_loop() is self._loop
        except RuntimeError:
            in_loop = False
        if in_loop:
            self._admit(job)
        else:
            self._loop.call_soon_threadsafe(self._admit, job)
        return True

    def on_delivery(self, delivery: Delivery) -> None:
        """Notification listener: email users who opted in."""
        job = job_for_delivery(delivery, self._app_name)
        if job is not None:
            self.enqueue(job)

    def _admit(self, job: EmailJob) -> None:
        self._unsettled += 1
        self._idle.clear()
        self._queue.put_nowait(job)

    def _settle(self) -> None:
        self._unsettled -= 1
        if self._unsettled <= 0:
            self._unsettled = 0
            self._idle.set()

    def _schedule_retry(self, job: EmailJob, delay: float) -> None:
        now = self._loop.time()
        self._retries = {h for h in self._retries if h.when() > now and not h.cancelled()}
        self._retries.add(self._loop.call_later(delay, self._queue.put_nowait, job))

    def _retry_delay(self, attempts: int) -> float:
        return self.backoff_base * (2 ** (attempts - 1))

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            try:
                await self._attempt(job)
            finally:
                self._queue.task_done()

    async def _attempt(self, job: EmailJob) -> None:
        job = replace(job, attempts=job.attempts + 1)
        try:
            await asyncio.to_thread(self._sender, job)
        except Exception as exc:
            if job.attempts >= self.max_attempts:
                self.failed += 1
                logger.error(
                    "Giving up on mail to %s after %d attempts: %s", job.to, job.attempts, exc,
                )
                self._settle()
                return
            delay = self._retry_delay(job.attempts)
            logger.warning(
                "Mail to %s failed (attempt %d/%d), retrying in %.1fs: %s",
                job.to, job.attempts, self.max_attempts, delay, exc,
            )
            self._schedule_retry(job, delay)
            return
        self.sent += 1
        self._settle()
        logger.debug("Mail sent to %s", job.to)


class NullEmailQueue:
    """Drop-in stand-in used when email is disabled."""

    enabled = False
    running = False

    async def start(self) -> None:
        logger.info("Email disabled; using null email queue")

    async def stop(self) -> None:
        return None

    async def join(self) -> None:
        return None

    def enqueue(self, job: EmailJob) -> bool:
        logger.debug("Email disabled; not sending %r to %s", job.subject, job.to)
        return False

    def on_delivery(self, delivery: Delivery) -> None:
        return None


def build_email_queue(cfg: HuddleConfig) -> EmailQueue | NullEmailQueue:
    if not cfg.email_enabled or not cfg.smtp_host:
        return NullEmailQueue()
    return EmailQueue(
        SmtpSender(cfg.smtp_host, cfg.smtp_port, cfg.email_from),
        app_name=cfg.app_name,
    )
