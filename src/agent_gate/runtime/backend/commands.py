"""Agent command templates rendered into argv lists."""

from __future__ import annotations

import shlex
from dataclasses import dataclass

from agent_gate.runtime.errors import CommandTemplateError

DEFAULT_COMMAND_TEMPLATE = "codex exec --skip-git-repo-check --json"
DEFAULT_RESUME_TEMPLATE = "codex exec --skip-git-repo-check resume {session_id} - --json"


@dataclass(slots=True, frozen=True)
class AgentCommand:
    """Fresh and resume command templates for one agent CLI.

    Supported placeholders are ``{model}`` and, for the resume template,
    ``{session_id}``. Values are shell-quoted before the rendered string is
    split, so tokens containing spaces stay single arguments.
    """

    template: str = DEFAULT_COMMAND_TEMPLATE
    resume_template: str | None = DEFAULT_RESUME_TEMPLATE
    model: str = ""

    @property
    def supports_resume(self) -> bool:
        return bool(self.resume_template and self.resume_template.strip())

    def fresh_argv(self) -> list[str]:
        return _render(self.template, model=self.model, session_id=None)

    def resume_argv(self, session_id: str) -> list[str]:
        if not self.supports_resume or self.resume_template is None:
            raise CommandTemplateError("Agent command has no resume template.")
        if "{session_id}" not in self.resume_template:
            raise CommandTemplateError("Resume command template must include {session_id}.")
        if not session_id.strip():
            raise CommandTemplateError("Resume requires a non-empty session id.")
        return _render(self.resume_template, model=self.model, session_id=session_id)

    def argv_for(self, session_id: str | None) -> list[str]:
        if session_id:
            return self.resume_argv(session_id)
        return self.fresh_argv()


def _render(template: str, *, model: str, session_id: str | None) -> list[str]:
    stripped = template.strip()
    if not stripped:
        raise CommandTemplateError("Agent command template is empty.")
    if session_id is None and "{session_id}" in stripped:
        raise CommandTemplateError("Fresh command template must not include {session_id}.")
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            session_id=shlex.quote(session_id or ""),
        )
    except (KeyError, IndexError) as error:
        raise CommandTemplateError(
            f"Unsupported command template placeholder: {error}",
        ) from error
    except ValueError as error:
        raise CommandTemplateError(f"Malformed command template: {error}") from error

    try:
        argv = shlex.split(rendered)
    except ValueError as error:
        raise CommandTemplateError(f"Cannot split rendered command: {error}") from error
    if not argv:
        raise CommandTemplateError("Agent command template rendered empty command.")
    return argv
