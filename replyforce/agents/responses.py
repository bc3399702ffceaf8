"""Response parameter defaults for each pipeline stage."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any


class ResponseParameterStore:
    """Maintain per-stage generation parameter defaults.

    ``model`` is a role (``fast`` or ``primary``) that the caller resolves to
    a concrete model identifier from its settings.
    """

    _DEFAULTS: Mapping[str, dict[str, Any]] = {
        "classifier": {"model": "fast", "temperature": 0.1, "max_tokens": 300, "json_output": True},
        "sentiment": {"model": "fast", "temperature": 0.1, "max_tokens": 150, "json_output": True},
        "reply": {"model": "primary", "temperature": 0.7, "max_tokens": 1000, "json_output": False},
    }

    def __init__(self, overrides: Mapping[str, Mapping[str, Any]] | None = None):
        self._defaults: dict[str, dict[str, Any]] = {
            stage: dict(params) for stage, params in self._DEFAULTS.items()
        }
        if overrides:
            for stage, params in overrides.items():
                merged = self._defaults.setdefault(stage.lower(), {})
                merged.update(params)

    def defaults_for_stage(self, stage: str) -> dict[str, Any]:
        """Return defaults for ``stage``."""

        return dict(
            self._defaults.get(
                stage.lower(),
                {"model": "fast", "temperature": 0.5, "max_tokens": 300, "json_output": False},
            )
        )
