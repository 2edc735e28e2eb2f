from __future__ import annotations

import asyncio
import json
import os
import tempfile
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from typing import Any

import structlog

from foreman.backends.base import AgentBackend, BackendExecutionError, BackendProcessError

logger = structlog.get_logger()


class SubprocessHost(AgentBackend):
    """Runs agents through a CLI that streams JSON events on stdout."""

    name = "subprocess"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        *,
        glitch_markers: Sequence[str] = ("Unexpected EOF",),
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.glitch_markers = tuple(glitch_markers)

    def build_command(
        self,
        user_prompt: str,
        *,
        model: str | None = None,
        tools: list[str] | None = None,
    ) -> list[str]:
        command = [self.binary, "-p", user_prompt, "--output-format", "stream-json"]
        if model:
            command.extend(["--model", model])
        if tools:
            command.extend(["--allowedTools", ",".join(tools)])
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        result = event.get("result")
        if event.get("type") == "result" and isinstance(result, str):
            return result
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def is_benign_failure(self, stderr_output: str, produced_output: bool) -> bool:
        """Whether a non-zero exit is the host's serialization glitch after a finished reply."""
        if not produced_output:
            return False
        return any(marker in stderr_output for marker in self.glitch_markers)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        logger.info("host_process_killed", pid=process.pid)

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        model = context.get("model") if isinstance(context.get("model"), str) else None

        with tempfile.NamedTemporaryFile(mode="w", suffix=".md", encoding="utf-8") as temp_file:
            temp_file.write(system_prompt)
            temp_file.flush()

            env = os.environ.copy()
            env["CLAUDE_MD"] = temp_file.name

            command = self.build_command(user_prompt, model=model, tools=tools)
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=str(self.working_directory) if self.working_directory else None,
                    env=env,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as exc:
                raise BackendProcessError(
                    f"Host binary not found: {self.binary}",
                    backend=self.name,
                    retriable=False,
                ) from exc

            if process.stdout is None:
                raise BackendProcessError(
                    "Host process did not expose stdout.", backend=self.name, retriable=False
                )

            produced_output = False
            parse_buffer = ""
            drained = False
            try:
                async for raw_line in process.stdout:
                    line = raw_line.decode("utf-8", errors="replace").strip()
                    if not line:
                        continue
                    candidate = f"{parse_buffer}{line}" if parse_buffer else line
                    try:
                        event = json.loads(candidate)
                        parse_buffer = ""
                    except json.JSONDecodeError:
                        if self._appears_partial_json(candidate):
                            parse_buffer = candidate
                            continue
                        parse_buffer = ""
                        produced_output = True
                        yield line
                        continue

                    content = self._extract_content(event) if isinstance(event, dict) else ""
                    if content:
                        produced_output = True
                        yield content

                if parse_buffer:
                    produced_output = True
                    yield parse_buffer
                drained = True
            finally:
                # consumer stopped early: timeout, relaunch or shutdown
                if not drained and process.returncode is None:
                    await self._terminate(process)

            return_code = await process.wait()
            stderr_output = ""
            if process.stderr is not None:
                stderr_output = (
                    (await process.stderr.read()).decode("utf-8", errors="replace").strip()
                )
            if return_code != 0:
                if self.is_benign_failure(stderr_output, produced_output):
                    logger.warning(
                        "host_glitch_ignored",
                        exit_code=return_code,
                        stderr=stderr_output[:200],
                    )
                    return
                raise BackendExecutionError(
                    f"Host process failed with exit code {return_code}: {stderr_output}",
                    backend=self.name,
                    exit_code=return_code,
                    retriable=True,
                )
