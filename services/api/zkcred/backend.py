import asyncio
import importlib
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Union, runtime_checkable

from zkcred.encoder import PrepareCircuitInputs, ShowCircuitInputs
from zkcred.errors import ConfigError, ProofError
from zkcred.models import CircuitParams

logger = logging.getLogger(__name__)

PREPARE_CIRCUIT = "prepare"
SHOW_CIRCUIT = "show"
CIRCUITS = (PREPARE_CIRCUIT, SHOW_CIRCUIT)

CircuitInputs = Union[PrepareCircuitInputs, ShowCircuitInputs]


@dataclass(frozen=True)
class KeyPair:
    proving_key: bytes
    verifying_key: bytes


@dataclass(frozen=True)
class ProveResult:
    proof: bytes
    instance: bytes
    witness: bytes
    shared_commitment: bytes


@runtime_checkable
class ProvingBackend(Protocol):
    """
    Zero-knowledge proving capability.

    ``prove`` commits to the inputs' shared scalars under ``shared_blinds``;
    two proofs over equal shared scalars and equal blinds carry the same
    commitment. ``reblind`` re-randomizes a proof with fresh ``blinds`` while
    keeping the commitment recorded in ``instance``.
    """

    async def setup(self, circuit: str) -> KeyPair: ...

    async def prove(self, proving_key: bytes, inputs: CircuitInputs, shared_blinds: bytes) -> ProveResult: ...

    async def reblind(self, proving_key: bytes, instance: bytes, witness: bytes, blinds: bytes) -> ProveResult: ...

    async def verify(self, proof: bytes, verifying_key: bytes) -> bool: ...

    async def generate_blinds(self, count: int) -> bytes: ...

    def shared_commitment(self, proof: bytes) -> bytes: ...


def load_backend(path: str, **kwargs) -> ProvingBackend:
    """Instantiate a backend from a ``module:attribute`` path."""
    if not path:
        raise ConfigError("No proving backend configured (set PROVING_BACKEND)")
    module_name, _, attr = path.partition(":")
    try:
        factory = getattr(importlib.import_module(module_name), attr or "Backend")
    except (ImportError, AttributeError) as exc:
        raise ConfigError(f"Proving backend {path!r} is not available", exc) from exc
    try:
        backend = factory(**kwargs)
    except Exception as exc:
        raise ConfigError(f"Proving backend {path!r} could not be created: {exc}", exc) from exc
    if not isinstance(backend, ProvingBackend):
        raise ConfigError(f"{path!r} does not implement the proving backend interface")
    return backend


class ProvingContext:
    """
    One proving backend handle plus its working directory.

    Backends that keep state on disk cannot run two operations at once, so
    every call goes through ``self.lock``. Independent credentials that need
    to prove concurrently should use one context each.
    """

    def __init__(self, backend: Optional[ProvingBackend], params: CircuitParams, work_dir: Optional[str] = None):
        if backend is None:
            raise ConfigError("Proving backend unavailable")
        self.backend = backend
        self.params = params
        self.work_dir = work_dir
        if work_dir:
            os.makedirs(work_dir, exist_ok=True)
        self.lock = asyncio.Lock()
        self._keys: Dict[str, KeyPair] = {}

    @classmethod
    def from_settings(cls, settings, backend: Optional[ProvingBackend] = None) -> "ProvingContext":
        if backend is None:
            backend = load_backend(settings.proving_backend)
        return cls(backend, CircuitParams.from_settings(settings), settings.work_dir)

    async def keys(self, circuit: str) -> KeyPair:
        if circuit not in CIRCUITS:
            raise ConfigError(f"Unknown circuit {circuit!r}")
        async with self.lock:
            if circuit not in self._keys:
                logger.info("running setup for %s circuit", circuit)
                try:
                    self._keys[circuit] = await self.backend.setup(circuit)
                except ProofError:
                    raise
                except Exception as exc:
                    raise ProofError(f"Setup failed for {circuit} circuit: {exc}", exc) from exc
            return self._keys[circuit]

    async def generate_blinds(self, count: int = 1) -> bytes:
        async with self.lock:
            return await self._call("generate_blinds", self.backend.generate_blinds, count)

    async def prove(self, circuit: str, inputs: CircuitInputs, shared_blinds: bytes) -> ProveResult:
        keys = await self.keys(circuit)
        async with self.lock:
            return await self._call("prove", self.backend.prove, keys.proving_key, inputs, shared_blinds)

    async def reblind(self, circuit: str, instance: bytes, witness: bytes, blinds: bytes) -> ProveResult:
        keys = await self.keys(circuit)
        async with self.lock:
            return await self._call("reblind", self.backend.reblind, keys.proving_key, instance, witness, blinds)

    async def verify(self, circuit: str, proof: bytes) -> bool:
        keys = await self.keys(circuit)
        async with self.lock:
            return bool(await self._call("verify", self.backend.verify, proof, keys.verifying_key))

    def shared_commitment(self, proof: bytes) -> bytes:
        return self.backend.shared_commitment(proof)

    async def _call(self, name, func, *args):
        try:
            return await func(*args)
        except ProofError:
            raise
        except Exception as exc:
            logger.warning("proving backend %s failed: %s", name, exc)
            raise ProofError(f"Proving backend {name} failed: {exc}", exc) from exc
