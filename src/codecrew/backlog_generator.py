from __future__ import annotations

import logging
import re
from typing import Any

import yaml

from codecrew.context_gate import ContextGate
from codecrew.errors import ValidationError
from codecrew.graph import validate_backlog
from codecrew.models import Backlog, utcnow_iso
from codecrew.sessions import AgentSessionBroker
from codecrew.specialists.planners import BacklogWriterAgent
from codecrew.state.backlog_store import BacklogStore

logger = logging.getLogger(__name__)

YAML_BLOCK_PATTERN = re.compile(r"```(?:ya?ml)?[ \t]*\n(.*?)\n```", re.DOTALL)


def extract_yaml_block(text: str) -> Any:
    match = YAML_BLOCK_PATTERN.search(text)
    if match is None:
        raise ValidationError("Agent answer holds no fenced yaml block.", reason="missing_yaml")
    try:
        return yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        raise ValidationError(
            f"Agent answer holds invalid yaml: {exc}", reason="invalid_yaml"
        ) from exc


def parse_backlog(text: str, track_id: str, gate: ContextGate) -> Backlog:
    payload = extract_yaml_block(text)
    if not isinstance(payload, dict):
        raise ValidationError("Generated backlog must be a mapping.", reason="schema")
    now = utcnow_iso()
    payload["track_id"] = track_id
    payload.setdefault("version", "1.0")
    payload.setdefault("created_at", now)
    payload["updated_at"] = now
    backlog = Backlog.from_dict(payload)
    for task in backlog.tasks:
        task.status = "pending"
        task.attempts = 0
    validate_generated_backlog(backlog, gate)
    return backlog


def validate_generated_backlog(backlog: Backlog, gate: ContextGate) -> None:
    if not backlog.tasks:
        raise ValidationError("Backlog must have at least one task.", reason="empty_backlog")
    for task in backlog.tasks:
        if not task.acceptance:
            raise ValidationError(
                f"Task {task.id} must have acceptance criteria.",
                reason="missing_acceptance",
                task_id=task.id,
            )
    validate_backlog(backlog)
    for task in backlog.tasks:
        gate.compress(task)


class BacklogGenerator:
    """Turns a merged plan into a validated backlog through one planning session."""

    def __init__(
        self,
        broker: AgentSessionBroker,
        gate: ContextGate,
        store: BacklogStore,
        *,
        timeout_seconds: float = 600.0,
        model: str | None = None,
    ) -> None:
        self.broker = broker
        self.gate = gate
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.agent = BacklogWriterAgent(model=model)

    async def generate(self, plan_text: str, track_id: str) -> Backlog:
        handle = await self.agent.open_session(self.broker)
        try:
            response = await self.agent.run(
                self.broker,
                handle,
                f'track_id: "{track_id}"\n\nPLAN:\n{plan_text.strip()}',
                timeout_seconds=self.timeout_seconds,
            )
            backlog = parse_backlog(response.content, track_id, self.gate)
        except BaseException as exc:
            try:
                await self.broker.close(handle)
            except Exception as cleanup_error:
                exc.add_note(f"teardown: {cleanup_error}")
            raise
        await self.broker.close(handle)
        self.store.save(backlog)
        logger.info("Backlog %s generated with %d tasks.", track_id, len(backlog.tasks))
        return backlog
