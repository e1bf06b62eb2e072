from __future__ import annotations

from typing import TYPE_CHECKING

from collabhub.config import sandbox_backend_name

if TYPE_CHECKING:  # pragma: no cover
    from .base import SandboxBackend


def get_backend(name: str | None = None) -> SandboxBackend:
    which = (name or sandbox_backend_name()).strip().lower()
    if which == "k8s":
        from .k8s_backend import K8sAgentSandboxBackend

        return K8sAgentSandboxBackend()
    if which == "local":
        from .local import LocalSandboxBackend

        return LocalSandboxBackend()
    raise ValueError(f"unknown SANDBOX_BACKEND: {which!r}")
