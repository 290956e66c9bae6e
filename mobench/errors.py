"""Error taxonomy for the mobile build pipeline."""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Mapping

if TYPE_CHECKING:
    from .command_runner import CommandResult


class MobenchError(RuntimeError):
    """Base error carrying a stage kind, an optional hint and diagnostic context."""

    kind = "error"

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.context: Dict[str, Any] = dict(context or {})

    def __str__(self) -> str:
        parts = [self.message]
        for key, value in self.context.items():
            if value is None or value == "":
                continue
            if key == "output_tail":
                parts.append("  output (tail):")
                parts.extend(f"    {line}" for line in str(value).splitlines())
                continue
            parts.append(f"  {key}: {value}")
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        return "\n".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind,
            "message": self.message,
            "context": {key: str(value) for key, value in self.context.items() if value is not None},
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class ConfigError(MobenchError):
    """Unresolvable crate, output or configuration input. Raised before any process is spawned."""

    kind = "config"


class CompileError(MobenchError):
    kind = "compile"

    def __init__(
        self,
        message: str,
        *,
        arch: str,
        hint: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        merged = {"arch": arch}
        merged.update(context or {})
        super().__init__(message, hint=hint, context=merged)
        self.arch = arch


class BindingGenError(MobenchError):
    kind = "bindgen"


class PackagingError(MobenchError):
    kind = "packaging"


class ToolError(MobenchError):
    kind = "tool"


class SigningError(MobenchError):
    kind = "signing"


class CommandError(MobenchError):
    """Raised by a command runner when an external process fails."""

    kind = "command"

    def __init__(self, result: CommandResult, *, hint: str | None = None) -> None:
        command = result.command
        message = f"Command failed with exit code {result.returncode}: {command.format()}"
        super().__init__(
            message,
            hint=hint,
            context={
                "command": command.format(),
                "cwd": str(command.working_dir) if command.working_dir else None,
                "exit_code": result.returncode,
                "output_tail": result.output_tail,
            },
        )
        self.result = result


def wrap_command_error(
    error_type: type[MobenchError],
    exc: CommandError,
    message: str,
    *,
    hint: str | None = None,
    arch: str | None = None,
) -> MobenchError:
    """Re-label a runner failure as the error kind of the stage that issued the command."""

    hint = hint or exc.hint
    if error_type is CompileError:
        return CompileError(message, arch=arch or "host", hint=hint, context=exc.context)
    return error_type(message, hint=hint, context=exc.context)


__all__ = [
    "BindingGenError",
    "CommandError",
    "CompileError",
    "ConfigError",
    "MobenchError",
    "PackagingError",
    "SigningError",
    "ToolError",
    "wrap_command_error",
]
