"""
Graded-notification dispatch boundary.

Intent:
    Tell a student their submission was graded. Delivery is fire-and-forget
    from the grading flow: the return value is informational and failures are
    logged, never raised into the caller.

Env:
    - NOTIFY_API_URL: HTTP email API endpoint (unset -> log-only notifier)
    - NOTIFY_API_KEY: bearer token for the API
    - NOTIFY_FROM: sender address (default: no-reply@localhost)
"""
from __future__ import annotations

import logging
import os
from typing import Optional, Protocol, Tuple

import httpx

_log = logging.getLogger("coursefiles.ops")


class Notifier(Protocol):
    def notify_graded(
        self, *, student_email: str, assignment_title: str, grade: float, feedback: Optional[str]
    ) -> Tuple[bool, Optional[str]]: ...


class LoggingNotifier:
    """Development notifier: records the event in the log only."""

    def notify_graded(
        self, *, student_email: str, assignment_title: str, grade: float, feedback: Optional[str]
    ) -> Tuple[bool, Optional[str]]:
        _log.info("graded notification (log only) assignment=%s grade=%s", assignment_title, grade)
        return True, None


class HttpNotifier:
    """POST a graded email to a transactional email API."""

    def __init__(self, *, api_url: str, api_key: str, sender: str, timeout: float = 10.0, client: Optional[httpx.Client] = None) -> None:
        self._url = api_url
        self._key = api_key
        self._sender = sender
        self._timeout = timeout
        self._client = client

    def _payload(self, student_email: str, assignment_title: str, grade: float, feedback: Optional[str]) -> dict:
        text = f'Your submission for "{assignment_title}" was graded: {grade:g}.'
        if feedback:
            text = f"{text}\n\nFeedback:\n{feedback}"
        return {
            "from": self._sender,
            "to": [student_email],
            "subject": f"Graded: {assignment_title}",
            "text": text,
        }

    def notify_graded(
        self, *, student_email: str, assignment_title: str, grade: float, feedback: Optional[str]
    ) -> Tuple[bool, Optional[str]]:
        headers = {"Authorization": f"Bearer {self._key}"}
        payload = self._payload(student_email, assignment_title, grade, feedback)
        try:
            if self._client is not None:
                resp = self._client.post(self._url, json=payload, headers=headers, timeout=self._timeout)
            else:
                with httpx.Client(timeout=self._timeout) as client:
                    resp = client.post(self._url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            _log.warning("notification failed error=%s", type(exc).__name__)
            return False, type(exc).__name__
        if resp.status_code >= 300:
            _log.warning("notification rejected status=%s", resp.status_code)
            return False, f"status_{resp.status_code}"
        return True, None


def notifier_from_env() -> Notifier:
    url = (os.getenv("NOTIFY_API_URL") or "").strip()
    key = (os.getenv("NOTIFY_API_KEY") or "").strip()
    if not url or not key:
        return LoggingNotifier()
    sender = (os.getenv("NOTIFY_FROM") or "no-reply@localhost").strip()
    return HttpNotifier(api_url=url, api_key=key, sender=sender)


__all__ = ["Notifier", "LoggingNotifier", "HttpNotifier", "notifier_from_env"]
