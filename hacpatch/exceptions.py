"""Exceptions raised by hacpatch."""

from typing import Iterable, Optional


class HacPatchError(Exception):
    """Base class for every error raised by hacpatch."""


class InvalidFileException(HacPatchError):
    """A provided file or value failed validation before any tool was run."""


class ToolAcquisitionError(HacPatchError):
    """An external tool could not be located, unpacked or built."""

    def __init__(self, kind, stage: str, detail: str = ""):
        self.kind = kind
        self.stage = stage
        self.detail = detail
        msg = f"Failed to acquire {kind} ({stage})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class ToolExecutionError(HacPatchError):
    """An external tool exited with a non-zero status."""

    def __init__(self, message: str, kind=None, returncode: Optional[int] = None, stderr: str = ""):
        self.kind = kind
        self.returncode = returncode
        self.stderr = stderr
        if stderr.strip():
            message = f"{message}\n{stderr.strip()}"
        super().__init__(message)


class ClassificationError(HacPatchError):
    """A tool report could not be turned into a content unit."""


class KeyDerivationError(HacPatchError):
    """No key material could be derived for a package."""


class PipelineError(HacPatchError):
    """A pipeline step could not find what it needs to continue."""


class MultiError(HacPatchError):
    """Several independent failures reported as one."""

    def __init__(self, errors: Iterable[BaseException]):
        self.errors = list(errors)
        msg = "\n".join(str(err) for err in self.errors)
        if len(self.errors) > 1:
            msg = "\n" + msg
        super().__init__(msg)
