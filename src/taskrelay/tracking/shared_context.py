"""Shared coordination document for pipelines and worker pools.

The document is markdown meant to be read by the workers themselves. Its
canonical state is the fenced ``json`` block at the end; the status sections
and message transcript above it are regenerated from that block on every
write and are never parsed back.

Every mutation is a whole-document read-modify-write performed inside
:meth:`SharedContextManager.transaction`, which holds the document lock for
the full cycle.
"""

import json
import os
import re
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Union

from ..core.exceptions import StateCorruptionError
from ..models.context import AgentMessage, AgentSlot, SharedContext, StepContext
from ..models.pipeline import PipelineStep, StepStatus
from ..storage.file_lock import DocumentLock


RAW_DATA_HEADING = "## Raw Data (JSON)"
JSON_BLOCK_PATTERN = re.compile(r"```json\n(.*?)\n```", re.DOTALL)
FENCE = "```"

STATUS_EMOJI = {
    StepStatus.COMPLETED: "✅",
    StepStatus.RUNNING: "🔄",
    StepStatus.FAILED: "❌",
    StepStatus.PENDING: "⏳",
}


def document_path(project_dir: Union[str, Path], parent_task_id: str) -> Path:
    """Location of the coordination document of one pipeline or pool."""
    return Path(project_dir) / f"SHARED_CONTEXT-{parent_task_id}.md"


def parse_document(content: str) -> Optional[SharedContext]:
    """
    Extract the canonical state from a document's JSON block.

    Only the block under the last ``## Raw Data (JSON)`` heading counts;
    fenced snippets quoted in the message transcript above it are ignored.

    Returns:
        SharedContext, or None if the document has no JSON block

    Raises:
        StateCorruptionError: If the JSON block is malformed
    """
    start = content.rfind(f"\n{RAW_DATA_HEADING}\n")
    if start >= 0:
        match = JSON_BLOCK_PATTERN.search(content, start)
    else:
        # No heading: the canonical block is the last one in the file
        matches = list(JSON_BLOCK_PATTERN.finditer(content))
        match = matches[-1] if matches else None
    if not match:
        return None
    try:
        return SharedContext.from_dict(json.loads(match.group(1)))
    except (json.JSONDecodeError, TypeError, ValueError) as e:
        raise StateCorruptionError("shared context", e)


def _quote_message(text: str) -> str:
    """Render message text inertly: no code fences, no headings of its own."""
    lines = text.replace(FENCE, "'''").splitlines() or [""]
    return "\n".join(f"> {line}" if line.lstrip().startswith("#") else line for line in lines)


def format_document(context: SharedContext) -> str:
    """Render the markdown projection followed by the canonical JSON block."""
    lines = [
        f"# Shared Context - Pipeline {context.pipeline_id}",
        "",
        "## Overview",
        f"- **Task ID:** {context.task_id}",
        f"- **Created:** {context.created_at}",
        f"- **Updated:** {context.updated_at}",
        f"- **Current Step:** {min(context.current_step + 1, len(context.steps))} of {len(context.steps)}",
        "",
        "## Pipeline Status",
        "",
    ]

    for index, step in enumerate(context.steps):
        if index:
            lines.extend(["---", ""])
        lines.append(f"### Step {index + 1}: {step.step_name}")
        lines.append(f"**Status:** {STATUS_EMOJI[step.status]} {step.status.value.upper()}")
        if step.started_at:
            lines.append(f"- **Started:** {step.started_at}")
        if step.completed_at:
            lines.append(f"- **Completed:** {step.completed_at}")
        if step.summary:
            lines.append(f"- **Summary:** {step.summary}")
        lines.extend(["", "**Agents:**"])
        if step.agents:
            lines.extend(f"- {a.agent_id} ({a.task_id}): {a.status} ({a.progress}%)" for a in step.agents)
        else:
            lines.append("- No agents assigned")
        lines.extend(["", "**Outputs:**"])
        if step.outputs:
            lines.extend(f"- {output}" for output in step.outputs)
        else:
            lines.append("- No outputs yet")
        lines.append("")

    lines.extend(["## Messages", ""])
    if context.messages:
        for m in context.messages:
            lines.extend([f"**[{m.timestamp}] {m.sender} → {m.recipient}:** {_quote_message(m.message)}", ""])
    else:
        lines.extend(["_No messages yet_", ""])

    lines.extend([
        "---",
        "",
        "*This file is auto-updated by the orchestrator. Edit only through the protocol described in your task.*",
        "",
        RAW_DATA_HEADING,
        "",
        "```json",
        json.dumps(context.to_dict(), indent=2, ensure_ascii=False),
        "```",
        "",
    ])
    return "\n".join(lines)


def mark_step(context: SharedContext, step_id: str, status: StepStatus, summary: Optional[str] = None) -> bool:
    """
    Set a step's status in memory, stamping start/completion times.

    Returns:
        False if the step doesn't exist
    """
    step = context.get_step(step_id)
    if step is None:
        return False
    now = datetime.now().isoformat()
    step.status = status
    if summary:
        step.summary = summary
    if status == StepStatus.RUNNING and not step.started_at:
        step.started_at = now
    if status in (StepStatus.COMPLETED, StepStatus.FAILED):
        step.completed_at = now
    return True


def reopen_step(context: SharedContext, step_id: str, task_id: str) -> bool:
    """
    Put a failed current step back to running for a retried child, in memory.

    Returns:
        True if the step was reopened
    """
    index = context.step_index(step_id)
    if index < 0 or index != context.current_step:
        return False
    step = context.steps[index]
    if step.status != StepStatus.FAILED:
        return False
    step.status = StepStatus.RUNNING
    step.completed_at = None
    step.summary = f"Reopened for retry of {task_id}"
    slot = step.find_agent(task_id)
    if slot:
        slot.status = "running"
        slot.progress = 0
    return True


def advance(context: SharedContext) -> int:
    """
    Complete the current step and start the next one, in memory.

    ``current_step`` only ever moves forward and stops at ``len(steps)``.

    Returns:
        The new current step index
    """
    if context.current_step < len(context.steps):
        current = context.steps[context.current_step]
        if current.status != StepStatus.COMPLETED:
            mark_step(context, current.step_id, StepStatus.COMPLETED)
        context.current_step += 1
    if context.current_step < len(context.steps):
        mark_step(context, context.steps[context.current_step].step_id, StepStatus.RUNNING)
    return context.current_step


class SharedContextManager:
    """Reads, writes and mutates coordination documents under their lock."""

    def __init__(self, lock_timeout: float = 30.0):
        """
        Initialize the manager.

        Args:
            lock_timeout: Maximum time to wait for a document lock (seconds)
        """
        self.lock_timeout = lock_timeout

    # ------------------------------------------------------------------
    # Whole-document I/O
    # ------------------------------------------------------------------

    def read(self, path: Union[str, Path]) -> Optional[SharedContext]:
        """Read a document, or None if it doesn't exist."""
        path = Path(path)
        try:
            content = path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return None
        return parse_document(content)

    def write(self, path: Union[str, Path], context: SharedContext) -> None:
        """Write a document atomically. Callers must hold the document lock."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        with open(tmp_path, 'w', encoding='utf-8') as f:
            f.write(format_document(context))
        os.replace(tmp_path, path)

    @contextmanager
    def transaction(self, path: Union[str, Path], owner: str = "") -> Iterator[Optional[SharedContext]]:
        """
        Lock a document for one read-modify-write cycle.

        Yields the current state (None if the document doesn't exist). Changes
        made to it are written back on normal exit; nothing is written if the
        block raises.
        """
        with DocumentLock(path, owner=owner, timeout=self.lock_timeout):
            context = self.read(path)
            yield context
            if context is not None:
                context.updated_at = datetime.now().isoformat()
                self.write(path, context)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create(
        self,
        path: Union[str, Path],
        pipeline_id: str,
        task_id: str,
        steps: List[PipelineStep],
    ) -> SharedContext:
        """
        Create a document with the first step running and the rest pending.

        Args:
            path: Document path
            pipeline_id: Pipeline or pool identifier
            task_id: Tracking task ID
            steps: Ordered steps

        Returns:
            The new SharedContext
        """
        now = datetime.now().isoformat()
        context = SharedContext(
            pipeline_id=pipeline_id,
            task_id=task_id,
            created_at=now,
            updated_at=now,
            current_step=0,
            steps=[
                StepContext(
                    step_id=step.id,
                    step_name=step.name,
                    status=StepStatus.RUNNING if index == 0 else StepStatus.PENDING,
                    started_at=now if index == 0 else None,
                )
                for index, step in enumerate(steps)
            ],
        )
        with DocumentLock(path, owner=task_id, timeout=self.lock_timeout):
            self.write(path, context)
        return context

    def update_step_status(
        self,
        path: Union[str, Path],
        step_id: str,
        status: StepStatus,
        summary: Optional[str] = None
    ) -> bool:
        """Set a step's status. Returns False if the document or step is missing."""
        with self.transaction(path) as context:
            if context is None:
                return False
            return mark_step(context, step_id, status, summary)

    def compare_and_set_step_status(
        self,
        path: Union[str, Path],
        step_id: str,
        expected: StepStatus,
        new_status: StepStatus,
        summary: Optional[str] = None
    ) -> bool:
        """
        Set a step's status only if it currently equals ``expected``.

        Returns:
            True if this call changed the status
        """
        with self.transaction(path) as context:
            if context is None:
                return False
            step = context.get_step(step_id)
            if step is None or step.status != expected:
                return False
            return mark_step(context, step_id, new_status, summary)

    def add_agent_to_step(self, path: Union[str, Path], step_id: str, agent_id: str, task_id: str) -> bool:
        """Register a child task against a step (once per task)."""
        with self.transaction(path) as context:
            if context is None:
                return False
            step = context.get_step(step_id)
            if step is None:
                return False
            if step.find_agent(task_id) is None:
                step.agents.append(AgentSlot(agent_id=agent_id, task_id=task_id, status="running"))
            return True

    def update_agent_progress(
        self,
        path: Union[str, Path],
        step_id: str,
        task_id: str,
        progress: int,
        status: Optional[str] = None
    ) -> bool:
        """Record a registered agent's progress and optional status."""
        with self.transaction(path) as context:
            if context is None:
                return False
            step = context.get_step(step_id)
            agent = step.find_agent(task_id) if step else None
            if agent is None:
                return False
            agent.progress = progress
            if status:
                agent.status = status
            return True

    def add_step_output(self, path: Union[str, Path], step_id: str, output: str) -> bool:
        """Append an output to a step (ignored if already listed)."""
        with self.transaction(path) as context:
            if context is None:
                return False
            step = context.get_step(step_id)
            if step is None:
                return False
            if output not in step.outputs:
                step.outputs.append(output)
            return True

    def add_message(
        self,
        path: Union[str, Path],
        sender: str,
        recipient: str,
        message: str,
        step_id: str
    ) -> bool:
        """Append a message to the transcript."""
        with self.transaction(path) as context:
            if context is None:
                return False
            context.messages.append(AgentMessage(
                sender=sender,
                recipient=recipient,
                message=message,
                step_id=step_id,
            ))
            return True

    def advance_to_next_step(self, path: Union[str, Path]) -> Optional[int]:
        """
        Complete the current step and start the next.

        Returns:
            New current step index, or None if the document is missing
        """
        with self.transaction(path) as context:
            if context is None:
                return None
            return advance(context)
