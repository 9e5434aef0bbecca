import asyncio
from typing import Awaitable, Callable, List, Optional

from .console import debug_print, mask_credential
from .errors import CollaboratorTimeout, GatewayError, NoCredentialAvailable

Extractor = Callable[[], Awaitable[Optional[str]]]


class TempCredentialPool:
    """
    A small rotating set of short-lived credentials minted by an extraction
    collaborator (see ``browser_automation.extract_temp_credential``).

    The cursor only moves when a credential is discarded; a healthy credential is
    reused until upstream rejects it.
    """

    def __init__(
        self,
        extractor: Extractor,
        *,
        target_size: int = 4,
        max_rounds: int = 2,
        extraction_timeout_seconds: float = 10.0,
        backoff_seconds: float = 1.0,
    ) -> None:
        self.extractor = extractor
        self.target_size = max(1, int(target_size))
        self.max_rounds = max(1, int(max_rounds))
        self.extraction_timeout_seconds = float(extraction_timeout_seconds)
        self.backoff_seconds = float(backoff_seconds)
        self.credentials: List[str] = []
        self.cursor = 0
        self.refreshing = False
        # Most recent extraction timeout; chained onto an empty-pool failure
        self.last_error: Optional[GatewayError] = None
        self._idle: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _ensure_loop(self) -> None:
        """Bind the idle event to the running loop (test cases get a fresh loop each)."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._loop is loop:
            return
        self._loop = loop
        self._idle = asyncio.Event()
        if not self.refreshing:
            self._idle.set()

    def __len__(self) -> int:
        return len(self.credentials)

    async def ensure(self, target_size: Optional[int] = None) -> None:
        self._ensure_loop()
        target = self.target_size if target_size is None else max(1, int(target_size))
        if self.refreshing:
            debug_print("⏳ Short-lived credential refresh already running, skipping")
            return
        if len(self.credentials) >= target:
            return
        await self.replenish(target)

    async def wait_idle(self) -> None:
        self._ensure_loop()
        if self._idle is not None:
            await self._idle.wait()

    async def _extract_one(self) -> Optional[str]:
        try:
            credential = await asyncio.wait_for(self.extractor(), timeout=self.extraction_timeout_seconds)
        except asyncio.TimeoutError:
            self.last_error = CollaboratorTimeout(
                f"Credential extraction exceeded {self.extraction_timeout_seconds:g}s"
            )
            debug_print(f"⏱️  {self.last_error.message}")
            return None
        except Exception as e:
            debug_print(f"❌ Credential extraction failed: {type(e).__name__}: {e}")
            return None
        if not isinstance(credential, str) or not credential.strip():
            return None
        return credential.strip()

    async def replenish(self, target_size: Optional[int] = None) -> int:
        """Fill the pool up to ``target_size``; returns how many credentials were added."""
        self._ensure_loop()
        target = self.target_size if target_size is None else max(1, int(target_size))
        self.refreshing = True
        if self._idle is not None:
            self._idle.clear()
        added = 0
        self.last_error = None
        try:
            remaining = target - len(self.credentials)
            rounds = 0
            while remaining > 0 and rounds < self.max_rounds:
                debug_print(f"🔐 Extracting {remaining} short-lived credential(s)...")
                results = await asyncio.gather(*(self._extract_one() for _ in range(remaining)))
                extracted = [c for c in results if c]
                for credential in extracted:
                    if credential not in self.credentials:
                        self.credentials.append(credential)
                        added += 1
                if len(extracted) >= remaining:
                    break
                if not extracted:
                    debug_print("⚠️  Extraction round produced no credentials, aborting refresh")
                    break
                remaining -= len(extracted)
                rounds += 1
                if rounds < self.max_rounds:
                    await asyncio.sleep(self.backoff_seconds * rounds)

            if self.credentials:
                self.cursor %= len(self.credentials)
            else:
                self.cursor = 0

            if len(self.credentials) < target:
                message = (
                    f"Unable to obtain enough short-lived credentials, "
                    f"current count: {len(self.credentials)}/{target}"
                )
                if not self.credentials:
                    raise NoCredentialAvailable(message) from self.last_error
                debug_print(f"⚠️  {message}")
            return added
        finally:
            debug_print(f"🔑 Short-lived credential pool size: {len(self.credentials)}")
            self.refreshing = False
            if self._idle is not None:
                self._idle.set()

    def consume(self) -> Optional[str]:
        if not self.credentials:
            return None
        self.cursor %= len(self.credentials)
        return self.credentials[self.cursor]

    def discard(self, value: Optional[str] = None) -> bool:
        """Remove a failed credential (the one at the cursor by default)."""
        if not self.credentials:
            return False
        if value is None:
            index = self.cursor % len(self.credentials)
        else:
            try:
                index = self.credentials.index(value)
            except ValueError:
                return False
        removed = self.credentials.pop(index)
        debug_print(f"🗑️  Discarded short-lived credential: {mask_credential(removed)}")
        if self.credentials:
            self.cursor %= len(self.credentials)
        else:
            self.cursor = 0
        return True
