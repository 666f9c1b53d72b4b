"""Audit trail in Jira.

:class:`JiraClient` wraps the handful of Jira REST calls the toolkit needs.
:class:`AuditEmitter` turns an :class:`AuditRecord` into a ticket.  Tracker
problems never change the outcome of the operation being audited: the
emitter logs them and carries on.
"""

from __future__ import annotations

import getpass
import logging
import socket
from datetime import UTC, datetime
from typing import Any

import httpx

from codesign_toolkit.config import TrackerSettings
from codesign_toolkit.errors import AuditUnavailable, SigningError
from codesign_toolkit.models import AuditRecord, Outcome

logger = logging.getLogger(__name__)

_API = "/rest/api/2"


# ---------------------------------------------------------------------------
# JiraClient
# ---------------------------------------------------------------------------


class JiraClient:
    """Minimal Jira REST v2 client using basic authentication."""

    def __init__(
        self,
        settings: TrackerSettings,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not settings.enabled:
            raise AuditUnavailable(
                "Jira is not configured: set JIRA_URL, JIRA_USER and JIRA_TOKEN"
            )
        self._settings = settings
        self._transport = transport

    def _request(
        self,
        method: str,
        path: str,
        expected: int,
        payload: dict[str, Any] | None = None,
    ) -> httpx.Response:
        settings = self._settings
        try:
            with httpx.Client(
                base_url=f"{settings.url}{_API}",
                auth=(settings.user or "", settings.token or ""),
                timeout=settings.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = client.request(method, path, json=payload)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise AuditUnavailable(f"Jira unreachable: {exc}") from exc

        if response.status_code != expected:
            raise AuditUnavailable(
                f"Jira {method} {path} returned HTTP {response.status_code}: "
                f"{response.text.strip()}"
            )
        return response

    def create_ticket(
        self,
        project: str,
        issue_type: str,
        summary: str,
        description: str = "",
        priority: str = "Medium",
    ) -> str:
        """Create an issue and return its key."""
        logger.info("Creating Jira ticket in project: %s", project)
        payload = {
            "fields": {
                "project": {"key": project},
                "summary": summary,
                "description": description,
                "issuetype": {"name": issue_type},
                "priority": {"name": priority},
            }
        }
        response = self._request("POST", "/issue", 201, payload)
        try:
            key = response.json()["key"]
        except (ValueError, KeyError, TypeError) as exc:
            raise AuditUnavailable(f"Jira returned no issue key: {exc}") from exc
        logger.info("Jira ticket created: %s", key)
        return key

    def update_ticket(
        self,
        issue_key: str,
        comment: str | None = None,
        status: str | None = None,
    ) -> None:
        """Add *comment* and/or move *issue_key* through the transition named *status*."""
        logger.info("Updating Jira ticket: %s", issue_key)
        if comment:
            self._request("POST", f"/issue/{issue_key}/comment", 201, {"body": comment})
            logger.info("Comment added to Jira ticket: %s", issue_key)
        if status:
            transition_id = self._transition_id(issue_key, status)
            self._request(
                "POST",
                f"/issue/{issue_key}/transitions",
                204,
                {"transition": {"id": transition_id}},
            )
            logger.info("Status updated to %r for Jira ticket: %s", status, issue_key)

    def _transition_id(self, issue_key: str, status: str) -> str:
        response = self._request("GET", f"/issue/{issue_key}/transitions", 200)
        try:
            transitions = response.json()["transitions"]
        except (ValueError, KeyError, TypeError) as exc:
            raise AuditUnavailable(f"Jira returned no transitions: {exc}") from exc
        for transition in transitions:
            if str(transition.get("name", "")).lower() == status.lower():
                return str(transition["id"])
        names = ", ".join(str(t.get("name")) for t in transitions) or "none"
        raise AuditUnavailable(
            f"Status {status!r} not found in available transitions ({names})"
        )


# ---------------------------------------------------------------------------
# Audit records
# ---------------------------------------------------------------------------


def build_record(
    operation: str,
    artifact_type: str,
    input_path: str,
    output_path: str | None,
    error: Exception | None = None,
) -> AuditRecord:
    """Build an :class:`AuditRecord` stamped with the current time, user and host.

    Errors that are not :class:`SigningError` are recorded under their class name.
    """
    return AuditRecord(
        operation=operation,
        artifact_type=artifact_type,
        input_path=input_path,
        output_path=output_path,
        outcome=Outcome.failure if error is not None else Outcome.success,
        error_kind=_kind(error) if error is not None else None,
        error_detail=str(error) if error is not None else None,
        timestamp=datetime.now(tz=UTC),
        principal=_principal(),
        host=socket.gethostname(),
    )


def _kind(error: Exception) -> str:
    if isinstance(error, SigningError):
        return error.kind
    return type(error).__name__


def _principal() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def describe(record: AuditRecord) -> tuple[str, str, str, str]:
    """Ticket ``(summary, description, issue_type, priority)`` for *record*."""
    lines = [
        f"**Operation:** {record.operation}",
        f"**File Type:** {record.artifact_type}",
        f"**Input File:** {record.input_path}",
        f"**Output File:** {record.output_path or '-'}",
    ]
    if record.outcome is Outcome.success:
        summary = (
            f"Code Signing Success: {record.operation} completed for {record.artifact_type}"
        )
        lines.append("**Status:** Success")
        issue_type, priority = "Task", "Low"
    else:
        summary = f"Code Signing Failure: {record.operation} failed for {record.artifact_type}"
        lines.append("**Status:** Failed")
        lines.append(f"**Error:** [{record.error_kind}] {record.error_detail}")
        issue_type, priority = "Bug", "High"
    lines += [
        f"**Timestamp:** {record.timestamp.astimezone(UTC):%Y-%m-%d %H:%M:%S} UTC",
        f"**User:** {record.principal}",
        f"**Host:** {record.host}",
    ]
    return summary, "\n".join(lines), issue_type, priority


# ---------------------------------------------------------------------------
# AuditEmitter
# ---------------------------------------------------------------------------


class AuditEmitter:
    """Send audit records to Jira, or nowhere when disabled."""

    def __init__(self, client: JiraClient | None, project: str | None) -> None:
        self._client = client
        self._project = project

    @classmethod
    def disabled(cls) -> AuditEmitter:
        return cls(None, None)

    @classmethod
    def from_settings(
        cls,
        settings: TrackerSettings,
        transport: httpx.BaseTransport | None = None,
    ) -> AuditEmitter:
        """An emitter for *settings*, or a disabled one if Jira is not fully configured."""
        if not settings.audit_enabled:
            return cls.disabled()
        return cls(JiraClient(settings, transport=transport), settings.project)

    @property
    def enabled(self) -> bool:
        return self._client is not None and bool(self._project)

    def emit(self, record: AuditRecord) -> str | None:
        """File *record* as a ticket and return its key.

        Returns ``None`` when disabled or when the tracker call fails; a
        failure is logged as a warning and otherwise ignored.
        """
        if not self.enabled:
            logger.debug(
                "Audit disabled; %s %s %s",
                record.operation,
                record.artifact_type,
                record.outcome.value,
            )
            return None

        summary, description, issue_type, priority = describe(record)
        try:
            return self._client.create_ticket(
                self._project, issue_type, summary, description, priority
            )
        except AuditUnavailable as exc:
            logger.warning("Failed to create Jira ticket for logging: %s", exc)
            return None


__all__ = [
    "AuditEmitter",
    "JiraClient",
    "build_record",
    "describe",
]
