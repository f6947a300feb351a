"""Deterministic local provider for offline runs and tests."""

from __future__ import annotations

import hashlib
import json

from edu_analyzer.providers.base import GenerateOptions, ProviderResponse
from edu_analyzer.providers.catalog import ModelSpec, ProviderKind


class EchoProvider:
    """Scores a prompt from its digest; same prompt always yields the same answer."""

    kind = ProviderKind.ECHO

    def complete(
        self,
        prompt: str,
        spec: ModelSpec,
        options: GenerateOptions,
    ) -> ProviderResponse:
        digest = hashlib.sha256(prompt.encode("utf-8")).digest()
        score = digest[0] % 5 - 2
        lines = [line.strip() for line in prompt.splitlines() if line.strip()]
        evidence = [lines[-1][:200]] if lines else []
        payload = {
            "score": score,
            "comment": f"Echo assessment of {len(prompt)} prompt characters",
            "evidence": evidence,
        }
        return ProviderResponse(
            text=json.dumps(payload, ensure_ascii=False),
            model=spec.model,
            tokens_used=len(prompt.split()),
        )

    def close(self) -> None:
        return None
