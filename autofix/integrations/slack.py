"""Slack webhook integration for remediation alerts."""

from __future__ import annotations

import logging

import requests

from autofix.models import Phase, RunOutcome

logger = logging.getLogger("autofix.slack")


def send_slack_message(webhook_url: str, text: str) -> bool:
    """Send a message to Slack via webhook. Returns True on success."""
    if not webhook_url:
        return False
    try:
        resp = requests.post(webhook_url, json={"text": text}, timeout=10)
        resp.raise_for_status()
        return True
    except requests.RequestException as e:
        logger.warning(f"Failed to send Slack alert: {e}")
        return False


def format_outcome_alert(outcome: RunOutcome) -> str:
    """Format a terminal remediation outcome as a Slack message."""
    emoji = {
        Phase.PUBLISHED: ":white_check_mark:",
        Phase.EXHAUSTED: ":warning:",
        Phase.ABORTED: ":rotating_light:",
    }.get(outcome.phase, ":gear:")

    lines = [f"{emoji} *Autofix {outcome.phase.value.upper()}: {outcome.repository}#{outcome.run_id}*"]
    lines.append(f"  {outcome.reason}")
    if outcome.root_cause:
        lines.append(f"  Root cause: {outcome.root_cause}")
    lines.append(f"  Providers tried: {', '.join(outcome.providers_tried) or 'none'}")
    lines.append(f"  Fix attempts: {outcome.total_attempts}")
    if outcome.validations:
        last = outcome.validations[-1]
        lines.append(f"  Last validation: {last.verdict} ({last.failure_kind.value})")
    if outcome.pull_request is not None:
        lines.append(f"  PR: {outcome.pull_request.url}")
    return "\n".join(lines)
