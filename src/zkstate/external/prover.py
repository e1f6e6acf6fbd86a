"""Prover boundary — turns a named circuit and its inputs into a proof.

The proving service is external. zkstate only depends on the Prover
protocol; HttpProver is the default adapter for a proving service that
accepts JSON over HTTP:

    POST {base_url}/generate-proof
    {"name": "joinCommitments", "inputs": ["123", "456", ...]}
    -> {"proof": {"a": [...], "b": [[...], [...]], "c": [...]}, ...}

Inputs are sent as decimal strings so that 254-bit values survive any
JSON parser on the other side.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional, Protocol, Sequence, runtime_checkable

from zkstate.crypto.field import to_int

logger = logging.getLogger(__name__)


@runtime_checkable
class Prover(Protocol):
    """Contract for proof generation backends."""

    async def generate_proof(self, circuit_name: str, inputs: Sequence[int]) -> Mapping[str, Any]:
        """Return a mapping with at least a "proof" entry."""
        ...


def flatten_proof(proof: Any) -> list[int]:
    """Flatten a nested proof structure into its ordered coefficients."""
    coefficients: list[int] = []
    stack: list[Any] = [proof]
    while stack:
        item = stack.pop()
        if isinstance(item, Mapping):
            stack.extend(reversed(list(item.values())))
        elif isinstance(item, (list, tuple)):
            stack.extend(reversed(item))
        else:
            coefficients.append(to_int(item))
    return coefficients


class HttpProver:
    """Prover backed by an HTTP proving service.

    The blocking request runs in a worker thread so other sagas keep
    making progress while a proof is being generated.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 600.0,
        session: Optional[Any] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session

    def _get_session(self) -> Any:
        """Lazy-load requests session."""
        if self._session is None:
            import requests
            self._session = requests.Session()
        return self._session

    def _post(self, circuit_name: str, inputs: Sequence[int]) -> Mapping[str, Any]:
        session = self._get_session()
        url = f"{self._base_url}/generate-proof"
        logger.info("Requesting %s proof from %s (%d inputs)", circuit_name, url, len(inputs))
        response = session.post(
            url,
            json={"name": circuit_name, "inputs": [str(int(v)) for v in inputs]},
            timeout=self._timeout,
        )
        response.raise_for_status()
        body = response.json()
        if "proof" not in body:
            raise ValueError(f"Prover response for {circuit_name} has no proof")
        return body

    async def generate_proof(self, circuit_name: str, inputs: Sequence[int]) -> Mapping[str, Any]:
        return await asyncio.to_thread(self._post, circuit_name, list(inputs))
