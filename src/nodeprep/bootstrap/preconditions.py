"""Container runtime presence checks that gate every bootstrap run."""
from __future__ import annotations

import os
from collections.abc import Callable

from ..models import RuntimeSelection
from .errors import PreconditionMissingError

PathProbe = Callable[[str], bool]


def check_runtime_endpoint(runtime: RuntimeSelection, exists: PathProbe = os.path.exists) -> bool:
    """Return ``True`` when the control pipe of *runtime* is present."""
    return bool(exists(runtime.endpoint))


def require_runtime(runtime: RuntimeSelection, exists: PathProbe = os.path.exists) -> None:
    """Raise :class:`PreconditionMissingError` when *runtime* is not running."""
    if not check_runtime_endpoint(runtime, exists):
        raise PreconditionMissingError(runtime)


__all__ = ["PathProbe", "check_runtime_endpoint", "require_runtime"]
