from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import click

from pipewright.models import Decision


class ApprovalChannel(ABC):
    @abstractmethod
    async def request_approval(self, context: dict[str, Any]) -> Decision:
        """Block until a proceed/abort decision exists for a blocking gate."""

    @abstractmethod
    async def notify(self, context: dict[str, Any]) -> None:
        """Surface a warning-level gate without waiting for a decision."""


class AutoApprovalChannel(ApprovalChannel):
    """Answers every blocking gate with a fixed decision and keeps an audit trail."""

    def __init__(self, decision: Decision = Decision.PROCEED) -> None:
        self.decision = decision
        self.requests: list[dict[str, Any]] = []
        self.notifications: list[dict[str, Any]] = []

    async def request_approval(self, context: dict[str, Any]) -> Decision:
        self.requests.append(dict(context))
        return self.decision

    async def notify(self, context: dict[str, Any]) -> None:
        self.notifications.append(dict(context))


class ConsoleApprovalChannel(ApprovalChannel):
    def __init__(self, *, show_artifacts: bool = True) -> None:
        self.show_artifacts = show_artifacts

    def _render(self, context: dict[str, Any]) -> str:
        lines = [
            f"[{context.get('verdict')}] {context.get('title')}",
            f"  metric={context.get('metric')!r} {context.get('comparison')} "
            f"{context.get('threshold')!r}",
        ]
        if context.get("iteration") is not None:
            lines.append(f"  iteration={context['iteration']}")
        if self.show_artifacts:
            for artifact in context.get("artifacts", [])[:20]:
                lines.append(f"  - {artifact.get('path')} ({artifact.get('format')})")
        return "\n".join(lines)

    async def request_approval(self, context: dict[str, Any]) -> Decision:
        click.echo(self._render(context))

        def _ask() -> bool:
            return click.confirm(str(context.get("question", "Proceed?")), default=False)

        approved = await asyncio.to_thread(_ask)
        return Decision.PROCEED if approved else Decision.ABORT

    async def notify(self, context: dict[str, Any]) -> None:
        click.echo(self._render(context), err=True)
