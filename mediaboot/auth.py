# mediaboot/auth.py
from __future__ import annotations

import asyncio
import binascii
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple

from .config import Settings
from .errors import ConfigurationError, CredentialError, MediabootError, NetworkUnavailableError
from .identity import IdentityProviderClient, TokenResult, generate_code_challenge, generate_code_verifier
from .prompter import InteractiveLoginPrompter
from .tokens import CredentialRecord, TokenState, TokenStore, is_well_formed_jwt
from .trust_cache import OfflineTrustCache

log = logging.getLogger("auth")

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class FlowOutcome:
    """Result of one credential-acquisition attempt."""
    flow: str
    credential: Optional[CredentialRecord] = None
    error: Optional[str] = None
    network_failure: bool = False
    persisted: bool = False

    @property
    def ok(self) -> bool:
        return self.credential is not None

    @classmethod
    def from_token_result(cls, flow: str, result: TokenResult) -> "FlowOutcome":
        if result.ok:
            return cls(flow, credential=result.credential)
        return cls(flow, error=result.error.describe() if result.error else "unknown error")


class AuthOrchestrator:
    """
    Obtains a usable credential. A healthy stored token is returned as-is; otherwise the
    flows are tried in order (refresh, browser or device code, then password when enabled)
    and the first success is persisted.
    """

    def __init__(
        self,
        settings: Settings,
        store: TokenStore,
        trust_cache: OfflineTrustCache,
        identity: IdentityProviderClient,
        prompter: InteractiveLoginPrompter,
        listener=None,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.store = store
        self.trust_cache = trust_cache
        self.identity = identity
        self.prompter = prompter
        self.listener = listener
        self._sleep = sleep
        self._clock = clock
        self._public_key: Optional[str] = None
        self._code_verifier = generate_code_verifier()
        self._browser_wait: Optional[asyncio.Future] = None

    # ---------- public ----------

    @property
    def access_token(self) -> Optional[str]:
        return self.store.load().access_token

    async def establish_credential(self) -> CredentialRecord:
        await self._load_public_key()

        state = self.store.validate()
        record = self.store.load()
        if state in (TokenState.valid, TokenState.no_refresh_token):
            if self._is_trusted(record):
                log.debug("Stored credential is %s; no login needed", state.value)
                return record
            log.warning("Stored access token failed signature verification; treating it as corrupt")
            state = TokenState.corrupt
            record = CredentialRecord()
        log.info("Stored credential is %s; acquiring a new one", state.value)

        if not self.identity.client_id:
            raise ConfigurationError("TOKEN_CLIENT_ID", "An OAuth client id is required to sign in")

        outcomes: List[FlowOutcome] = []
        for name, flow in self._flow_chain(record):
            outcome = await self._attempt(name, flow)
            outcomes.append(outcome)
            if outcome.ok:
                log.info("Signed in via %s", name)
                if not outcome.persisted:
                    self._persist(outcome.credential)
                return outcome.credential
            log.warning("%s login failed: %s", name.capitalize(), outcome.error)

        summary = "; ".join(f"{o.flow}: {o.error}" for o in outcomes) or "no login flow available"
        if outcomes and all(o.network_failure for o in outcomes):
            raise NetworkUnavailableError(self.identity.service_name, summary)
        raise CredentialError(details=summary)

    async def exchange_authorization_code(self, code: str, redirect_uri: Optional[str] = None) -> CredentialRecord:
        """Exchange the code delivered to the local callback. Resolves a waiting browser login."""
        verifier = self._code_verifier
        self._code_verifier = generate_code_verifier()
        try:
            result = await asyncio.to_thread(
                self.identity.exchange_authorization_code,
                code, verifier, redirect_uri or self.settings.redirect_uri,
            )
            if not result.ok:
                raise CredentialError(
                    "Authorization code exchange failed",
                    result.error.describe() if result.error else None,
                )
            if not is_well_formed_jwt(result.credential.access_token):
                raise CredentialError("Authorization code exchange failed", "Access token is not a JWT")
        except MediabootError as e:
            self._resolve_browser_wait(error=e)
            raise
        self._persist(result.credential)
        self._resolve_browser_wait(record=result.credential)
        return result.credential

    # ---------- flow chain ----------

    def _flow_chain(self, record: CredentialRecord) -> List[Tuple[str, Callable[[], Awaitable[FlowOutcome]]]]:
        chain: List[Tuple[str, Callable[[], Awaitable[FlowOutcome]]]] = []
        if record.refresh_token:
            chain.append(("refresh", lambda: self._refresh_flow(record.refresh_token)))
        if self.listener is not None and self.prompter.has_display():
            chain.append(("browser", self._browser_flow))
        else:
            chain.append(("device code", self._device_code_flow))
        if self.settings.AUTH_PASSWORD_FALLBACK:
            chain.append(("password", self._password_flow))
        return chain

    async def _attempt(self, name: str, flow: Callable[[], Awaitable[FlowOutcome]]) -> FlowOutcome:
        try:
            outcome = await flow()
        except NetworkUnavailableError as e:
            return FlowOutcome(name, error=e.message, network_failure=True)
        except MediabootError as e:
            return FlowOutcome(name, error=e.details or e.message)
        if outcome.ok and not is_well_formed_jwt(outcome.credential.access_token):
            return FlowOutcome(name, error="Access token is not a JWT")
        return outcome

    async def _refresh_flow(self, refresh_token: str) -> FlowOutcome:
        result = await asyncio.to_thread(self.identity.refresh_grant, refresh_token)
        return FlowOutcome.from_token_result("refresh", result)

    async def _device_code_flow(self) -> FlowOutcome:
        authorization = await asyncio.to_thread(self.identity.request_device_code)
        self.prompter.show_device_code(authorization)
        deadline = self._clock() + authorization.expires_in
        polls = 0
        while self._clock() < deadline:
            result = await asyncio.to_thread(self.identity.poll_device_token, authorization.device_code)
            polls += 1
            if result.ok:
                log.debug("Device code approved after %d polls", polls)
                return FlowOutcome("device code", credential=result.credential)
            if result.error is None or not result.error.is_pending:
                return FlowOutcome.from_token_result("device code", result)
            await self._sleep(authorization.interval)
        return FlowOutcome("device code", error="Device code expired before it was approved")

    async def _browser_flow(self) -> FlowOutcome:
        loop = asyncio.get_running_loop()
        self._browser_wait = loop.create_future()
        started_here = False
        try:
            if not self.listener.is_running:
                await self.listener.start()
                started_here = True
            url = self.identity.authorize_url(
                generate_code_challenge(self._code_verifier), self.settings.redirect_uri,
            )
            await asyncio.to_thread(self.prompter.open_browser, url)
            try:
                record = await asyncio.wait_for(self._browser_wait, self.settings.BROWSER_LOGIN_TIMEOUT)
            except asyncio.TimeoutError:
                return FlowOutcome("browser", error="Timed out waiting for the browser login")
            return FlowOutcome("browser", credential=record, persisted=True)
        finally:
            self._browser_wait = None
            if started_here:
                await self.listener.stop()

    async def _password_flow(self) -> FlowOutcome:
        creds = await asyncio.to_thread(self.prompter.ask_password)
        if creds is None:
            return FlowOutcome("password", error="No credentials entered")
        result = await asyncio.to_thread(self.identity.password_grant, creds.username, creds.password, creds.otp)
        return FlowOutcome.from_token_result("password", result)

    # ---------- helpers ----------

    def _is_trusted(self, record: CredentialRecord) -> bool:
        """Signature check with the provider key. Without any key the token cannot be checked offline."""
        if not self.trust_cache.has_key:
            return True
        return self.trust_cache.is_trusted(record.access_token)

    def _resolve_browser_wait(self, record: Optional[CredentialRecord] = None, error: Optional[BaseException] = None) -> None:
        wait = self._browser_wait
        if wait is None or wait.done():
            return
        if error is not None:
            wait.set_exception(error)
        else:
            wait.set_result(record)

    async def _load_public_key(self) -> None:
        if self._public_key is not None:
            return
        try:
            key = await asyncio.to_thread(self.identity.fetch_public_key)
        except MediabootError as e:
            log.warning("Could not load auth keys from the identity provider: %s", e.message)
        else:
            try:
                self.trust_cache.use_public_key(key)
                self._public_key = key
                return
            except (binascii.Error, ValueError) as e:
                log.warning("Identity provider published an unusable auth key: %s", e)
        if self.trust_cache.load():
            log.info("Using cached auth key for offline validation")
            self._public_key = self.trust_cache.public_key

    def _persist(self, record: CredentialRecord) -> None:
        self.store.save(record)
        if not self._public_key:
            return
        try:
            self.trust_cache.cache_public_key(self._public_key)
        except (binascii.Error, ValueError, OSError) as e:
            log.warning("Could not cache auth key: %s", e)
