"""
Scripting bridge for macOS Reminders and Notes.

Each invocation writes a JXA script to a fresh temporary directory, runs it
through osascript with a timeout and a bounded output size, and always
removes the directory afterwards. Scripts report back a single JSON object
{"ok": bool, "id"?: str, "error"?: str}.
"""

import asyncio
import json
import logging
import shutil
import sys
import tempfile
from abc import ABC
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ...common.errors import DeliveryError

logger = logging.getLogger("livepipe.pipeline.sinks")

EXEC_TIMEOUT_S = 10.0
MAX_OUTPUT_BYTES = 1024 * 1024


def escape_jxa(text: str) -> str:
    """Escape text for a double-quoted JavaScript string literal"""
    return (
        text.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def jxa_literal(value) -> str:
    if value is None:
        return "null"
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return f'"{escape_jxa(str(value))}"'


@dataclass
class ScriptResult:
    ok: bool
    id: Optional[str] = None
    error: Optional[str] = None


class ScriptBridge:
    """Runs JXA scripts via osascript"""

    def __init__(self, label: str = "livepipe", timeout: float = EXEC_TIMEOUT_S, max_output: int = MAX_OUTPUT_BYTES):
        self.label = label
        self.timeout = timeout
        self.max_output = max_output

    async def run(self, script: str) -> ScriptResult:
        """
        Execute a script and parse its JSON reply.

        Raises:
            DeliveryError: osascript failed, timed out, overflowed or printed garbage
        """
        tmp_dir = Path(tempfile.mkdtemp(prefix=f"livepipe-{self.label}-"))
        try:
            script_path = tmp_dir / "script.jxa"
            script_path.write_text(script, encoding="utf-8")

            proc = await asyncio.create_subprocess_exec(
                "osascript", "-l", "JavaScript", str(script_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                raise DeliveryError(self.label, f"osascript timed out after {self.timeout:.0f}s")

            if len(stdout) > self.max_output:
                raise DeliveryError(self.label, "osascript output exceeded buffer limit")

            if proc.returncode != 0:
                detail = stderr.decode("utf-8", "replace").strip()
                raise DeliveryError(self.label, f"osascript failed (exit {proc.returncode}): {detail[:300]}")

            text = stdout.decode("utf-8", "replace").strip()
            if not text:
                raise DeliveryError(self.label, "osascript returned empty output")

            try:
                data = json.loads(text)
            except json.JSONDecodeError as e:
                raise DeliveryError(self.label, f"invalid JXA output: {e}")

            return ScriptResult(
                ok=bool(data.get("ok")),
                id=str(data["id"]) if data.get("id") is not None else None,
                error=data.get("error"),
            )
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)


class SyncSink(ABC):
    """
    Base class for OS-level sync targets.

    Subclasses read their own settings section from the live config and skip
    quietly when disabled or when the host is not macOS (warning once).
    """

    def __init__(self, name: str, bridge: Optional[ScriptBridge] = None, platform: str = sys.platform):
        self.name = name
        self.bridge = bridge or ScriptBridge(label=name)
        self.platform = platform
        self._warned_platform = False
        self._warned_disabled = False

    def _should_sync(self, enabled: bool) -> bool:
        if not enabled:
            if not self._warned_disabled:
                logger.info("%s.enabled is false, skipping %s sync", self.name, self.name)
                self._warned_disabled = True
            return False
        self._warned_disabled = False

        if self.platform != "darwin":
            if not self._warned_platform:
                logger.warning("%s sync is enabled but this host is not macOS, skipping", self.name)
                self._warned_platform = True
            return False
        return True

    async def _run(self, script: str, action: str) -> ScriptResult:
        result = await self.bridge.run(script)
        if not result.ok:
            raise DeliveryError(self.name, f"{action} failed: {result.error or 'unknown error'}")
        return result
