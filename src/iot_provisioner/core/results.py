"""
Result objects for core operations.

Provides a unified result structure that any front end can use to display
operation outcomes consistently.
"""

from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

from iot_provisioner.errors import ErrorKind, ProvisionError


@dataclass
class OperationResult:
    """
    Unified result object for all core operations.

    Attributes:
        ok: Whether the operation completed successfully
        operation: Name of the operation (e.g., "write_segment", "configure_wifi")
        model: Device model id ("vvvv:pppp") or product name
        segment: Flash segment involved, if any
        path: Local file read or written, if any
        bytes_len: Number of bytes processed
        warnings: Non-blocking issues encountered
        errors: Blocking errors that caused failure
        metadata: Additional operation-specific data
        logs: Captured log lines from the operation
    """
    ok: bool
    operation: str
    model: str = ""
    segment: str = ""
    path: str = ""
    bytes_len: int = 0
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        """Structured kind of the failure, when it came from a ProvisionError."""
        value = self.metadata.get("error_kind")
        return ErrorKind(value) if value else None

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "ok": self.ok,
            "operation": self.operation,
            "model": self.model,
            "segment": self.segment,
            "path": self.path,
            "bytes_len": self.bytes_len,
            "warnings": self.warnings,
            "errors": self.errors,
            "metadata": self.metadata,
            "logs": self.logs,
        }

    @classmethod
    def success(
        cls,
        operation: str,
        model: str = "",
        segment: str = "",
        bytes_len: int = 0,
        **kwargs,
    ) -> "OperationResult":
        """Create a successful result."""
        return cls(
            ok=True,
            operation=operation,
            model=model,
            segment=segment,
            bytes_len=bytes_len,
            **kwargs,
        )

    @classmethod
    def failure(
        cls,
        operation: str,
        error: str,
        model: str = "",
        **kwargs,
    ) -> "OperationResult":
        """Create a failed result."""
        result = cls(
            ok=False,
            operation=operation,
            model=model,
            **kwargs,
        )
        result.errors.append(error)
        return result

    @classmethod
    def from_error(
        cls,
        operation: str,
        error: ProvisionError,
        model: str = "",
        **kwargs,
    ) -> "OperationResult":
        """
        Create a failed result from a provisioning error.

        The error kind and raw collaborator output go into metadata so a
        front end can pick remediation without parsing the message.
        """
        result = cls.failure(operation, str(error), model=model, **kwargs)
        result.metadata["error_kind"] = error.kind.value
        if error.raw and error.raw != str(error):
            result.metadata["raw"] = error.raw
        return result
