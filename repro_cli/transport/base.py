"""Shared shape of the package-manager adapters."""

from __future__ import annotations

import abc

from repro_core.session import SessionController


class TransportAdapter(abc.ABC):
    """Translate one package manager's framing into session controller calls."""

    def __init__(self, controller: SessionController) -> None:
        self.controller = controller

    @abc.abstractmethod
    def run(self) -> int:
        """Serve the manager until it is done and return the process exit status."""
