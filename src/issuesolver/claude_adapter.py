from __future__ import annotations

from pathlib import Path
import json
import logging
from typing import cast

from issuesolver.collaborators import CodeGenerator
from issuesolver.config import ClaudeConfig
from issuesolver.observability import log_event
from issuesolver.shell import run


LOGGER = logging.getLogger("issuesolver.claude_adapter")


class ClaudeAdapter(CodeGenerator):
    def __init__(self, config: ClaudeConfig) -> None:
        self._config = config

    def generate_code(self, prompt: str, repo_dir: Path) -> str:
        cmd = self.build_command(prompt)
        log_event(
            LOGGER,
            "claude_invocation_started",
            repo_dir=str(repo_dir),
            prompt_chars=len(prompt),
        )
        raw_events = run(cmd, cwd=repo_dir, timeout_seconds=self._config.timeout_seconds)
        output = _extract_final_output(raw_events)
        log_event(
            LOGGER,
            "claude_invocation_finished",
            repo_dir=str(repo_dir),
            output_chars=len(output),
        )
        return output

    def build_command(self, prompt: str) -> list[str]:
        cmd = [self._config.cli_path]
        if self._config.disallowed_tools:
            cmd.extend(["--disallowedTools", self._config.disallowed_tools])
        if self._config.allowed_tools:
            cmd.extend(["--allowedTools", self._config.allowed_tools])
        if self._config.dangerously_skip_permissions:
            cmd.append("--dangerously-skip-permissions")
        if self._config.model:
            cmd.extend(["--model", self._config.model])
        cmd.extend(["--output-format", "stream-json", "--verbose", "-p", prompt])
        return cmd


def _extract_final_output(raw_events: str) -> str:
    """Return the final text of a stream-json run.

    The terminal ``result`` event wins when it carries text; otherwise the text
    blocks of the last assistant message are used.
    """
    saw_event = False
    last_assistant_text: str | None = None
    result_text: str | None = None
    for line in raw_events.splitlines():
        text = line.strip()
        if not text:
            continue
        payload = _parse_event_line(text)
        if payload is None:
            continue
        saw_event = True
        if payload.get("is_error") is True:
            raise RuntimeError(f"Claude CLI returned an error: {payload.get('result')}")
        event_type = payload.get("type")
        if event_type == "assistant":
            message_text = _assistant_text(payload)
            if message_text is not None:
                last_assistant_text = message_text
        elif event_type == "result":
            result = payload.get("result")
            if isinstance(result, str):
                result_text = result
    if not saw_event:
        raise RuntimeError("Claude CLI did not emit any stream-json events")
    if result_text:
        return result_text
    return last_assistant_text or ""


def _assistant_text(payload: dict[str, object]) -> str | None:
    message = _as_object_dict(payload.get("message"))
    if message is None:
        return None
    content = message.get("content")
    if not isinstance(content, list):
        return None
    texts: list[str] = []
    for item in content:
        item_obj = _as_object_dict(item)
        if item_obj is None or item_obj.get("type") != "text":
            continue
        item_text = item_obj.get("text")
        if isinstance(item_text, str):
            texts.append(item_text)
    if not texts:
        return None
    return "\n".join(texts)


def _parse_event_line(line: str) -> dict[str, object] | None:
    if not line.startswith("{"):
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)
