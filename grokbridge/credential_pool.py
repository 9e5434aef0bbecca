import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .console import debug_print, mask_credential

TWO_HOURS = 2 * 60 * 60
ONE_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class ModelQuota:
    request_frequency: int
    expiration_seconds: float


@dataclass
class CredentialEntry:
    value: str
    request_count: int = 0
    added_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class QuarantinedCredential:
    value: str
    model: str
    evicted_at: float


DEFAULT_MODEL_QUOTAS: Dict[str, ModelQuota] = {
    "grok-2": ModelQuota(request_frequency=20, expiration_seconds=TWO_HOURS),
    "grok-3": ModelQuota(request_frequency=20, expiration_seconds=TWO_HOURS),
    "grok-3-deepsearch": ModelQuota(request_frequency=10, expiration_seconds=ONE_DAY),
    "grok-3-reasoning": ModelQuota(request_frequency=10, expiration_seconds=ONE_DAY),
}


def normalize_model_name(model: str) -> str:
    """Collapse feature-suffixed variants (``grok-3-search``) to their quota bucket."""
    model = str(model or "")
    if model.startswith("grok-") and "deepsearch" not in model and "reasoning" not in model:
        return "-".join(model.split("-")[:2])
    return model


class CredentialPool:
    """
    Long-lived credentials tracked per quota bucket.

    Each bucket keeps a FIFO active list. ``next()`` charges the head; a head that
    is already past its quota is only evicted when the *following* call finds it
    there, and that call is served by the new head instead. In other words an
    exhausted credential lingers in the active list (contributing zero to
    ``remaining_capacity()``) until the next request for its bucket arrives.

    All compound read/increment/evict sequences run without an ``await`` in
    between, so they are atomic with respect to other coroutines on the loop.
    Running the pool from several threads would need a per-bucket lock.
    """

    def __init__(
        self,
        quotas: Optional[Dict[str, ModelQuota]] = None,
        *,
        sweep_interval_seconds: float = TWO_HOURS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.quotas: Dict[str, ModelQuota] = dict(quotas or DEFAULT_MODEL_QUOTAS)
        self.sweep_interval_seconds = float(sweep_interval_seconds)
        self._clock = clock
        self._active: Dict[str, List[CredentialEntry]] = {model: [] for model in self.quotas}
        self._quarantine: List[QuarantinedCredential] = []
        self._sweeper_task: Optional[asyncio.Task] = None

    # --- registration ---

    def add(self, value: str) -> None:
        value = str(value or "").strip()
        if not value:
            return
        now = self._clock()
        for model, entries in self._active.items():
            if any(entry.value == value for entry in entries):
                continue
            if self._is_quarantined(model, value):
                continue
            entries.append(CredentialEntry(value=value, request_count=0, added_at=now))

    def set_single(self, value: str) -> None:
        """Replace every bucket with a single fresh entry for ``value``."""
        now = self._clock()
        self._active = {model: [CredentialEntry(value=value, added_at=now)] for model in self.quotas}
        self._quarantine = []

    # --- selection ---

    def normalize_model(self, model: str) -> str:
        return normalize_model_name(model)

    def next(self, model: str) -> Optional[str]:
        bucket = self.normalize_model(model)
        entries = self._active.get(bucket)
        if not entries:
            return None
        quota = self.quotas[bucket]
        while entries:
            head = entries[0]
            head.request_count += 1
            if head.request_count > quota.request_frequency:
                self._evict(bucket, head.value)
                continue
            return head.value
        return None

    def peek(self, model: str) -> Optional[str]:
        entries = self._active.get(self.normalize_model(model))
        if not entries:
            return None
        return entries[0].value

    def invalidate(self, model: str, value: str) -> bool:
        bucket = self.normalize_model(model)
        if bucket not in self._active:
            debug_print(f"❌ Model {bucket} has no credential bucket")
            return False
        return self._evict(bucket, value)

    # --- inspection ---

    def count(self, model: str) -> int:
        return len(self._active.get(self.normalize_model(model)) or [])

    def entries(self, model: str) -> List[CredentialEntry]:
        return list(self._active.get(self.normalize_model(model)) or [])

    def all_credentials(self) -> List[str]:
        seen: List[str] = []
        for entries in self._active.values():
            for entry in entries:
                if entry.value not in seen:
                    seen.append(entry.value)
        return seen

    def quarantined(self) -> List[QuarantinedCredential]:
        return list(self._quarantine)

    def remaining_capacity(self) -> Dict[str, int]:
        capacity = {}
        for model, quota in self.quotas.items():
            entries = self._active.get(model) or []
            used = sum(entry.request_count for entry in entries)
            capacity[model] = max(0, len(entries) * quota.request_frequency - used)
        return capacity

    # --- quarantine ---

    def _is_quarantined(self, model: str, value: str) -> bool:
        return any(q.model == model and q.value == value for q in self._quarantine)

    def _evict(self, bucket: str, value: str) -> bool:
        entries = self._active.get(bucket) or []
        index = next((i for i, entry in enumerate(entries) if entry.value == value), -1)
        if index == -1:
            debug_print(f"❌ Credential {mask_credential(value)} not found for model {bucket}")
            return False
        removed = entries.pop(index)
        self._quarantine.append(
            QuarantinedCredential(value=removed.value, model=bucket, evicted_at=self._clock())
        )
        debug_print(f"🗑️  Quarantined credential for {bucket}: {mask_credential(removed.value)}")
        self._ensure_sweeper()
        return True

    def sweep(self, now: Optional[float] = None) -> int:
        """Reactivate quarantined credentials whose expiration has passed."""
        now = self._clock() if now is None else now
        reactivated = 0
        still_waiting: List[QuarantinedCredential] = []
        for item in self._quarantine:
            quota = self.quotas.get(item.model)
            if quota is None or now - item.evicted_at < quota.expiration_seconds:
                still_waiting.append(item)
                continue
            entries = self._active.setdefault(item.model, [])
            if not any(entry.value == item.value for entry in entries):
                entries.append(CredentialEntry(value=item.value, request_count=0, added_at=now))
                reactivated += 1
        self._quarantine = still_waiting
        if reactivated:
            debug_print(f"♻️  Reactivated {reactivated} credential(s)")
        return reactivated

    def _ensure_sweeper(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; the next eviction under a running loop starts it.
            return
        task = self._sweeper_task
        if task is not None and not task.done() and task.get_loop() is loop:
            return
        self._sweeper_task = loop.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep()
            except Exception as e:
                debug_print(f"❌ Error in credential reactivation sweep: {e}")

    async def close(self) -> None:
        task = self._sweeper_task
        self._sweeper_task = None
        if task is None or task.done():
            return
        if task.get_loop() is not asyncio.get_running_loop():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
