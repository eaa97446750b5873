"""Pipeline state management and result types.

State machine for a pipeline run:
IDLE → RUNNING → SUCCEEDED | FAILED | CANCELLED
     ↑_____________________________|
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class PipelineState(str, Enum):
    """Pipeline state machine states."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Phase(str, Enum):
    """Pipeline phases, declared in execution order."""

    CLEAN = "clean"
    BUILD = "build"
    TEST = "test"
    PACKAGE = "package"


class DiagnosticSeverity(str, Enum):
    """xcodebuild diagnostic severity levels."""

    ERROR = "error"
    WARNING = "warning"
    NOTE = "note"


@dataclass
class BuildDiagnostic:
    """Parsed compiler/linker diagnostic from xcodebuild output."""

    severity: DiagnosticSeverity
    message: str
    file: str | None = None
    line: int | None = None
    column: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "message": self.message,
        }
        if self.file:
            result["file"] = self.file
        if self.line is not None:
            result["line"] = self.line
        if self.column is not None:
            result["column"] = self.column
        return result


# Clang/swiftc format: path:line:col: severity: message
XCODEBUILD_DIAGNOSTIC_PATTERN = re.compile(
    r"^(?P<file>[^:\s][^:]*):(?P<line>\d+):(?:(?P<col>\d+):)?\s*"
    r"(?P<severity>error|warning|note):\s*(?P<message>.+)$",
    re.IGNORECASE,
)

# Tool-level format without location: "xcodebuild: error: message"
XCODEBUILD_SIMPLE_PATTERN = re.compile(
    r"^(?:[\w.-]+:\s*)?(?P<severity>error|warning|note):\s*(?P<message>.+)$",
    re.IGNORECASE,
)


def parse_xcodebuild_output(output: str) -> list[BuildDiagnostic]:
    """Parse xcodebuild output into structured diagnostics.

    Args:
        output: xcodebuild console output

    Returns:
        List of parsed diagnostics
    """
    diagnostics: list[BuildDiagnostic] = []

    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue

        match = XCODEBUILD_DIAGNOSTIC_PATTERN.match(line)
        if match:
            col = match.group("col")
            diagnostics.append(
                BuildDiagnostic(
                    severity=DiagnosticSeverity(match.group("severity").lower()),
                    message=match.group("message"),
                    file=match.group("file"),
                    line=int(match.group("line")),
                    column=int(col) if col else None,
                )
            )
            continue

        match = XCODEBUILD_SIMPLE_PATTERN.match(line)
        if match:
            diagnostics.append(
                BuildDiagnostic(
                    severity=DiagnosticSeverity(match.group("severity").lower()),
                    message=match.group("message"),
                )
            )

    return diagnostics


class BuildError(Exception):
    """Fatal pipeline error. Aborts the whole run."""

    def __init__(
        self,
        message: str,
        diagnostics: list[BuildDiagnostic] | None = None,
        exit_code: int | None = None,
    ):
        super().__init__(message)
        self.diagnostics = diagnostics or []
        self.exit_code = exit_code

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "error": str(self),
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }
        if self.exit_code is not None:
            result["exitCode"] = self.exit_code
        return result


class ToolError(BuildError):
    """An external toolchain invocation exited non-zero."""

    def __init__(
        self,
        command: list[str],
        exit_code: int | None,
        stdout: str = "",
        stderr: str = "",
        message: str | None = None,
    ):
        tool = command[0] if command else "tool"
        super().__init__(
            message or f"{tool} failed with exit code {exit_code}",
            diagnostics=parse_xcodebuild_output(stdout + "\n" + stderr),
            exit_code=exit_code,
        )
        self.command = command
        self.stdout = stdout
        self.stderr = stderr

    @property
    def errors(self) -> list[BuildDiagnostic]:
        """Get only error diagnostics."""
        return [d for d in self.diagnostics if d.severity == DiagnosticSeverity.ERROR]

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["command"] = self.command
        return result


@dataclass
class PhaseResult:
    """Result of a single pipeline phase."""

    phase: Phase
    success: bool
    duration_ms: float = 0.0
    outputs: list[str] = field(default_factory=list)
    error: str | None = None
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "phase": self.phase.value,
            "success": self.success,
            "durationMs": round(self.duration_ms, 2),
        }
        if self.outputs:
            result["outputs"] = self.outputs
        if self.error:
            result["error"] = self.error
        if self.skipped:
            result["skipped"] = True
        return result


@dataclass
class PipelineResult:
    """Result of a full orchestrated run."""

    channel: str
    state: PipelineState
    phases: list[PhaseResult] = field(default_factory=list)
    exit_code: int = 0
    error: BuildError | None = None

    @property
    def success(self) -> bool:
        return self.state == PipelineState.SUCCEEDED

    @property
    def duration_ms(self) -> float:
        return sum(p.duration_ms for p in self.phases)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "success": self.success,
            "state": self.state.value,
            "channel": self.channel,
            "exitCode": self.exit_code,
            "durationMs": round(self.duration_ms, 2),
            "phases": [p.to_dict() for p in self.phases],
        }
        if self.error is not None:
            result["error"] = self.error.to_dict()
        return result

    def to_summary(self) -> str:
        """Generate human-readable summary."""
        status = {
            PipelineState.SUCCEEDED: "[OK] Pipeline succeeded",
            PipelineState.CANCELLED: "[CANCELLED] Pipeline cancelled",
        }.get(self.state, "[FAILED] Pipeline failed")

        parts = [
            status,
            f"  Channel: {self.channel}",
            f"  Duration: {self.duration_ms:.0f}ms",
        ]
        for phase in self.phases:
            mark = "skipped" if phase.skipped else ("ok" if phase.success else "failed")
            parts.append(f"  {phase.phase.value}: {mark} ({phase.duration_ms:.0f}ms)")
            for output in phase.outputs:
                parts.append(f"    -> {output}")

        if self.error is not None:
            parts.append(f"  Error: {self.error}")
            errors = [
                d for d in self.error.diagnostics if d.severity == DiagnosticSeverity.ERROR
            ]
            # Show first few errors
            for err in errors[:5]:
                location = ""
                if err.file:
                    location = err.file
                    if err.line:
                        location += f":{err.line}"
                    location += ": "
                parts.append(f"    {location}{err.message}")
            if len(errors) > 5:
                parts.append(f"    ... and {len(errors) - 5} more errors")

        return "\n".join(parts)
