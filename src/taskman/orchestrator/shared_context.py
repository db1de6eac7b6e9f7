"""Markdown coordination document shared by all workers of one pipeline or pool.

The orchestrator owns the managed sections and the fenced JSON block that
holds the structured state. Everything under the trailing `## Agent Notes`
heading belongs to workers and is carried over verbatim on every rewrite.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from taskman.orchestrator.contracts import write_text_atomic
from taskman.orchestrator.models import PipelineStep, StepStatus
from taskman.storage.common import utc_now

logger = logging.getLogger(__name__)

SHARED_CONTEXT_FILENAME = "SHARED_CONTEXT.md"
RAW_DATA_HEADING = "## Raw Data (JSON)"
AGENT_NOTES_HEADING = "## Agent Notes"
_JSON_FENCE_OPEN = "```json\n"
_JSON_FENCE_CLOSE = "\n```"
_DEFAULT_NOTES = "_Workers append free-form notes below this line._\n"


@dataclass(slots=True)
class ContextAgent:
    """One worker registered on a step."""

    agent_id: str
    task_id: str
    status: str = "running"
    progress: int = 0


@dataclass(slots=True)
class SharedStepContext:
    step_id: str
    step_name: str
    status: StepStatus = StepStatus.PENDING
    agents: list[ContextAgent] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    summary: str | None = None
    started_at: str | None = None
    completed_at: str | None = None


@dataclass(slots=True)
class AgentMessage:
    sender: str
    recipient: str
    message: str
    timestamp: str
    step_id: str


@dataclass(slots=True)
class SharedContext:
    """Structured state carried in the document's JSON block."""

    pipeline_id: str
    task_id: str
    created_at: str
    updated_at: str
    current_step: int = 0
    steps: list[SharedStepContext] = field(default_factory=list)
    messages: list[AgentMessage] = field(default_factory=list)

    def step(self, step_id: str) -> SharedStepContext | None:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None


class SharedContextDocument:
    """Read-modify-write access to one SHARED_CONTEXT.md file."""

    def __init__(self, path: Path, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.path = path
        self.clock = clock

    def create(
        self,
        *,
        pipeline_id: str,
        task_id: str,
        steps: Iterable[PipelineStep],
    ) -> SharedContext:
        """Write the initial skeleton; existing agent notes are kept."""

        now = self._now()
        context = SharedContext(
            pipeline_id=pipeline_id,
            task_id=task_id,
            created_at=now,
            updated_at=now,
            steps=[SharedStepContext(step_id=step.id, step_name=step.name) for step in steps],
        )
        self.write(context)
        return context

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> SharedContext | None:
        """Parse the JSON block; None when the file is absent or unparseable."""

        if not self.path.exists():
            return None
        content = self.path.read_text("utf-8")
        raw_block, _ = _split_document(content)
        if raw_block is None:
            logger.warning("Shared context %s has no data block", self.path)
            return None
        try:
            payload = json.loads(raw_block)
            return _context_from_payload(payload)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable shared context %s: %s", self.path, exc)
            return None

    def read_notes(self) -> str:
        if not self.path.exists():
            return _DEFAULT_NOTES
        _, notes = _split_document(self.path.read_text("utf-8"))
        return notes if notes is not None else _DEFAULT_NOTES

    def write(self, context: SharedContext) -> None:
        notes = self.read_notes()
        write_text_atomic(self.path, render_markdown(context, notes=notes))

    def update_step_status(
        self,
        step_id: str,
        status: StepStatus,
        *,
        summary: str | None = None,
    ) -> bool:
        def _apply(context: SharedContext) -> bool:
            step = context.step(step_id)
            if step is None:
                return False
            step.status = status
            if summary:
                step.summary = summary
            if status == StepStatus.RUNNING and step.started_at is None:
                step.started_at = self._now()
            if status in {StepStatus.COMPLETED, StepStatus.FAILED}:
                step.completed_at = self._now()
            return True

        return self._mutate(_apply)

    def set_current_step(self, index: int) -> bool:
        def _apply(context: SharedContext) -> bool:
            if not 0 <= index < len(context.steps):
                return False
            context.current_step = index
            return True

        return self._mutate(_apply)

    def add_agent(self, step_id: str, *, agent_id: str, task_id: str) -> bool:
        def _apply(context: SharedContext) -> bool:
            step = context.step(step_id)
            if step is None:
                return False
            if any(agent.task_id == task_id for agent in step.agents):
                return False
            step.agents.append(ContextAgent(agent_id=agent_id, task_id=task_id))
            return True

        return self._mutate(_apply)

    def update_agent(
        self,
        step_id: str,
        *,
        task_id: str,
        progress: int,
        status: str | None = None,
    ) -> bool:
        def _apply(context: SharedContext) -> bool:
            step = context.step(step_id)
            if step is None:
                return False
            agent = next((item for item in step.agents if item.task_id == task_id), None)
            if agent is None:
                return False
            agent.progress = progress
            if status:
                agent.status = status
            return True

        return self._mutate(_apply)

    def add_step_output(self, step_id: str, output: str) -> bool:
        def _apply(context: SharedContext) -> bool:
            step = context.step(step_id)
            if step is None or output in step.outputs:
                return False
            step.outputs.append(output)
            return True

        return self._mutate(_apply)

    def add_message(self, *, sender: str, recipient: str, message: str, step_id: str) -> bool:
        def _apply(context: SharedContext) -> bool:
            context.messages.append(
                AgentMessage(
                    sender=sender,
                    recipient=recipient,
                    message=message,
                    timestamp=self._now(),
                    step_id=step_id,
                ),
            )
            return True

        return self._mutate(_apply)

    def _mutate(self, apply: Callable[[SharedContext], bool]) -> bool:
        context = self.read()
        if context is None:
            return False
        if not apply(context):
            return False
        context.updated_at = self._now()
        self.write(context)
        return True

    def _now(self) -> str:
        return self.clock().isoformat()


def render_markdown(context: SharedContext, *, notes: str = _DEFAULT_NOTES) -> str:
    """Full document text: managed sections, JSON block, then agent notes."""

    total = len(context.steps)
    lines = [
        f"# Shared Context - Pipeline {context.pipeline_id}",
        "",
        "## Overview",
        f"- **Task ID:** {context.task_id}",
        f"- **Created:** {context.created_at}",
        f"- **Updated:** {context.updated_at}",
        f"- **Current Step:** {min(context.current_step + 1, total)} of {total}",
        "",
        "## Pipeline Status",
    ]
    for index, step in enumerate(context.steps, start=1):
        lines.extend(["", f"### Step {index}: {_inline(step.step_name)}"])
        lines.append(f"**Status:** {step.status.value.upper()}")
        if step.started_at:
            lines.append(f"- **Started:** {step.started_at}")
        if step.completed_at:
            lines.append(f"- **Completed:** {step.completed_at}")
        if step.summary:
            lines.append(f"- **Summary:** {_inline(step.summary)}")
        lines.extend(["", "**Agents:**"])
        if step.agents:
            lines.extend(
                f"- {agent.agent_id} ({agent.task_id}): {agent.status} ({agent.progress}%)"
                for agent in step.agents
            )
        else:
            lines.append("- No agents assigned")
        lines.extend(["", "**Outputs:**"])
        if step.outputs:
            lines.extend(f"- {_inline(output)}" for output in step.outputs)
        else:
            lines.append("- No outputs yet")
    lines.extend(["", "## Messages", ""])
    if context.messages:
        for message in context.messages:
            lines.append(
                f"**[{message.timestamp}] {_inline(message.sender)} -> "
                f"{_inline(message.recipient)}:** {_inline(message.message)}",
            )
            lines.append("")
    else:
        lines.extend(["_No messages yet_", ""])
    lines.extend(
        [
            "---",
            "",
            "*This file is auto-updated by the pipeline system*",
            "",
            RAW_DATA_HEADING,
            "",
            _JSON_FENCE_OPEN
            + json.dumps(_context_to_payload(context), ensure_ascii=False, indent=2)
            + _JSON_FENCE_CLOSE,
            "",
            AGENT_NOTES_HEADING,
            "",
        ],
    )
    return "\n".join(lines) + notes


def _inline(text: str) -> str:
    """Collapse free text to one line so it can never start a section heading."""

    return " ".join(text.split())


def _split_document(content: str) -> tuple[str | None, str | None]:
    _, found, tail = content.partition(f"\n{RAW_DATA_HEADING}\n")
    if not found:
        return None, None
    block, notes_found, notes = tail.partition(f"\n{AGENT_NOTES_HEADING}\n")
    start = block.find(_JSON_FENCE_OPEN)
    end = block.rfind(_JSON_FENCE_CLOSE)
    if start == -1 or end <= start:
        return None, None
    raw = block[start + len(_JSON_FENCE_OPEN) : end]
    if not notes_found:
        return raw, None
    return raw, notes


def _context_to_payload(context: SharedContext) -> dict[str, Any]:
    return {
        "pipelineId": context.pipeline_id,
        "taskId": context.task_id,
        "createdAt": context.created_at,
        "updatedAt": context.updated_at,
        "currentStep": context.current_step,
        "steps": [
            {
                "stepId": step.step_id,
                "stepName": step.step_name,
                "status": step.status.value,
                "startedAt": step.started_at,
                "completedAt": step.completed_at,
                "agents": [
                    {
                        "agentId": agent.agent_id,
                        "taskId": agent.task_id,
                        "status": agent.status,
                        "progress": agent.progress,
                    }
                    for agent in step.agents
                ],
                "outputs": list(step.outputs),
                "summary": step.summary,
            }
            for step in context.steps
        ],
        "messages": [
            {
                "from": message.sender,
                "to": message.recipient,
                "message": message.message,
                "timestamp": message.timestamp,
                "stepId": message.step_id,
            }
            for message in context.messages
        ],
    }


def _context_from_payload(payload: dict[str, Any]) -> SharedContext:
    return SharedContext(
        pipeline_id=str(payload["pipelineId"]),
        task_id=str(payload["taskId"]),
        created_at=str(payload["createdAt"]),
        updated_at=str(payload["updatedAt"]),
        current_step=int(payload.get("currentStep", 0)),
        steps=[
            SharedStepContext(
                step_id=str(item["stepId"]),
                step_name=str(item.get("stepName", item["stepId"])),
                status=StepStatus(item.get("status", StepStatus.PENDING.value)),
                agents=[
                    ContextAgent(
                        agent_id=str(agent["agentId"]),
                        task_id=str(agent["taskId"]),
                        status=str(agent.get("status", "running")),
                        progress=int(agent.get("progress", 0)),
                    )
                    for agent in item.get("agents", [])
                ],
                outputs=[str(output) for output in item.get("outputs", [])],
                summary=item.get("summary"),
                started_at=item.get("startedAt"),
                completed_at=item.get("completedAt"),
            )
            for item in payload.get("steps", [])
        ],
        messages=[
            AgentMessage(
                sender=str(item["from"]),
                recipient=str(item["to"]),
                message=str(item["message"]),
                timestamp=str(item["timestamp"]),
                step_id=str(item.get("stepId", "")),
            )
            for item in payload.get("messages", [])
        ],
    )
