from __future__ import annotations

import allure
import pytest

from agent_gate.runtime.backend.commands import AgentCommand
from agent_gate.runtime.errors import CommandTemplateError

pytestmark = [
    allure.epic("Process Supervision"),
    allure.feature("Command Templates"),
]


def test_default_templates_render_codex_commands() -> None:
    command = AgentCommand()

    assert command.fresh_argv() == ["codex", "exec", "--skip-git-repo-check", "--json"]
    assert command.resume_argv("abc-123") == [
        "codex",
        "exec",
        "--skip-git-repo-check",
        "resume",
        "abc-123",
        "-",
        "--json",
    ]


def test_placeholder_values_are_quoted_into_single_arguments() -> None:
    command = AgentCommand(
        template="agent --model {model}",
        resume_template="agent --model {model} --resume {session_id}",
        model="big model; rm -rf /",
    )

    assert command.fresh_argv() == ["agent", "--model", "big model; rm -rf /"]
    assert command.argv_for("id with space")[-1] == "id with space"
    assert command.argv_for(None) == command.fresh_argv()


def test_template_errors_are_reported() -> None:
    with pytest.raises(CommandTemplateError):
        AgentCommand(template="   ").fresh_argv()
    with pytest.raises(CommandTemplateError):
        AgentCommand(template="agent {session_id}").fresh_argv()
    with pytest.raises(CommandTemplateError):
        AgentCommand(template="agent {prompt}").fresh_argv()
    with pytest.raises(CommandTemplateError):
        AgentCommand(template="agent 'unterminated").fresh_argv()
    with pytest.raises(CommandTemplateError):
        AgentCommand(resume_template="agent resume").resume_argv("abc")


def test_missing_resume_template_disables_resume() -> None:
    command = AgentCommand(template="agent", resume_template=None)

    assert command.supports_resume is False
    with pytest.raises(CommandTemplateError):
        command.resume_argv("abc")
