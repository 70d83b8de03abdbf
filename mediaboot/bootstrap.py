# mediaboot/bootstrap.py
from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from .api_info import ApiInfo
from .auth import AuthOrchestrator
from .certificate import CertificateClient
from .config import VERSION, Settings, platform_name
from .errors import ConfigurationError, InvalidTransitionError, MediabootError, NetworkUnavailableError, RemoteServiceError
from .http_client import ServiceClient
from .identity import IdentityProviderClient
from .network import NetworkDiscovery, NetworkProbe
from .phases import BootstrapPhase, BootstrapPhaseMachine
from .prompter import ConsolePrompter, InteractiveLoginPrompter
from .recovery import DeferredTaskSet, DegradedRecoveryLoop, RecoverySteps
from .registration import RegistrationClient
from .setup_server import LocalCallbackListener
from .tasks import StartupTask, TaskGraphRunner
from .tokens import TokenStore
from .trust_cache import OfflineTrustCache

log = logging.getLogger("startup")

P = BootstrapPhase


def server_info(settings: Settings, discovery: NetworkDiscovery) -> Dict[str, str]:
    return {
        "id": settings.resolve_device_id(),
        "name": settings.DEVICE_NAME,
        "internal_ip": discovery.internal_ip,
        "external_ip": discovery.external_ip,
        "internal_port": str(settings.INTERNAL_PORT),
        "external_port": str(settings.EXTERNAL_PORT),
        "version": VERSION,
        "platform": platform_name(),
    }


@dataclass
class BootContext:
    """Everything the boot sequence talks to. Built once per process and passed down."""
    settings: Settings
    store: TokenStore
    trust_cache: OfflineTrustCache
    identity: IdentityProviderClient
    machine: BootstrapPhaseMachine
    auth: AuthOrchestrator
    api_info: ApiInfo
    probe: NetworkProbe
    discovery: NetworkDiscovery
    registration: RegistrationClient
    certificate: CertificateClient
    listener: LocalCallbackListener

    @classmethod
    def from_settings(cls, settings: Settings, prompter: Optional[InteractiveLoginPrompter] = None) -> "BootContext":
        settings.ensure_dirs()
        device_id = settings.resolve_device_id()
        common = dict(user_agent=settings.USER_AGENT, timeout=settings.HTTP_TIMEOUT)

        store = TokenStore(settings.token_file)
        trust_cache = OfflineTrustCache(settings.auth_keys_file)
        identity = IdentityProviderClient(settings.AUTH_BASE_URL, settings.TOKEN_CLIENT_ID, **common)
        machine = BootstrapPhaseMachine()
        auth = AuthOrchestrator(settings, store, trust_cache, identity, prompter or ConsolePrompter())
        listener = LocalCallbackListener(machine, settings.INTERNAL_PORT, on_code=auth.exchange_authorization_code)
        auth.listener = listener

        discovery = NetworkDiscovery(
            ServiceClient(settings.API_BASE_URL, **common), settings.external_ip_file, settings.EXTERNAL_IP_URL,
        )

        def access_token() -> Optional[str]:
            return store.load().access_token

        return cls(
            settings=settings,
            store=store,
            trust_cache=trust_cache,
            identity=identity,
            machine=machine,
            auth=auth,
            api_info=ApiInfo(ServiceClient(settings.API_BASE_URL, **common), settings.api_keys_file),
            probe=NetworkProbe(settings.probe_targets(), settings.PROBE_TIMEOUT),
            discovery=discovery,
            registration=RegistrationClient(
                settings.API_SERVER_BASE_URL, access_token, lambda: server_info(settings, discovery), **common,
            ),
            certificate=CertificateClient(
                settings.API_SERVER_BASE_URL, device_id, access_token,
                settings.cert_file, settings.key_file, settings.ca_file,
                user_agent=settings.USER_AGENT,
            ),
            listener=listener,
        )


class Bootstrap:
    """
    Boot sequence: initial phase from the stored credential, setup listener when needed,
    the startup task graph, and a hand-off to the recovery loop for anything deferred.
    """

    def __init__(self, ctx: BootContext, recovery_sleep: Optional[Callable[[float], Awaitable[None]]] = None):
        self.ctx = ctx
        self.network_up = False
        self.runner: Optional[TaskGraphRunner] = None
        self.recovery: Optional[DegradedRecoveryLoop] = None
        self.recovery_task: Optional[asyncio.Task] = None
        self._recovery_sleep = recovery_sleep
        self._listener_watch: Optional[asyncio.Task] = None
        self._caller_tasks: List[StartupTask] = []
        ctx.listener.on_authenticated = self._after_callback_login

    @property
    def degraded(self) -> bool:
        return self.recovery_task is not None and not self.recovery_task.done()

    # ---------- boot ----------

    async def boot(self, caller_tasks: Iterable[StartupTask] = ()) -> TaskGraphRunner:
        ctx = self.ctx
        ctx.settings.ensure_dirs()
        state = ctx.store.validate()
        log.info("Stored credential: %s", state.value)
        ctx.machine.determine_initial_phase(state)

        if ctx.machine.is_setup_required:
            if not ctx.identity.client_id:
                raise ConfigurationError("TOKEN_CLIENT_ID", "An OAuth client id is required to sign in")
            await self._start_setup_listener()

        self._caller_tasks = [self._as_caller_task(t) for t in caller_tasks]
        self.runner = TaskGraphRunner(self.declare_tasks(self._caller_tasks))
        await self.runner.run_all()

        if self.runner.deferred_tasks or ctx.api_info.loaded_from_cache:
            self._enter_degraded_mode()
        else:
            log.info("Startup complete")
        return self.runner

    def declare_tasks(self, caller_tasks: List[StartupTask]) -> List[StartupTask]:
        return [
            StartupTask("api_info", self._load_api_info, can_defer=True, phase=1),
            StartupTask("network_probe", self._probe_network, phase=1),
            StartupTask("auth", self.authenticate, can_defer=True, phase=2, depends_on=("network_probe",)),
            StartupTask("network_discovery", self._discover_at_boot, can_defer=True, phase=3,
                        depends_on=("network_probe",)),
            *caller_tasks,
            StartupTask("register", self.register, can_defer=True, phase=4,
                        depends_on=("auth", "network_discovery")),
        ]

    @staticmethod
    def _as_caller_task(task: StartupTask) -> StartupTask:
        depends = tuple(dict.fromkeys(("api_info",) + task.depends_on))
        return dataclasses.replace(task, can_defer=True, phase=max(task.phase, 3), depends_on=depends)

    async def _load_api_info(self) -> None:
        if not await asyncio.to_thread(self.ctx.api_info.load):
            raise NetworkUnavailableError("remote configuration", "No API keys from network or cache")

    async def _refresh_cached_api_info(self) -> bool:
        if not self.ctx.api_info.loaded_from_cache:
            return True
        return await asyncio.to_thread(self.ctx.api_info.refresh)

    async def _probe_network(self) -> None:
        self.network_up = await self.ctx.probe.check()
        if not self.network_up:
            log.warning("No network connectivity at startup")

    async def _discover_at_boot(self) -> None:
        if not self.network_up:
            raise NetworkUnavailableError("network", "Connectivity probe failed")
        await self._discover()

    async def _discover(self) -> None:
        await asyncio.to_thread(self.ctx.discovery.discover)

    # ---------- phase-driving operations ----------

    async def authenticate(self) -> bool:
        """Establish a credential, driving Unauthenticated -> Authenticating -> Authenticated."""
        machine = self.ctx.machine
        drive = machine.current_phase == P.unauthenticated and machine.transition_to(P.authenticating)
        try:
            await self.ctx.auth.establish_credential()
        except MediabootError as e:
            if drive:
                machine.transition_to(P.unauthenticated)
                machine.set_error(f"Authentication failed: {e.message}")
            raise
        if drive:
            machine.transition_to(P.authenticated)
        return True

    async def register(self) -> None:
        """Register and obtain a certificate, driving Authenticated -> ... -> Complete."""
        ctx = self.ctx
        machine = ctx.machine
        phase = machine.current_phase

        if phase == P.complete:
            await self._register_device()
            await asyncio.to_thread(ctx.certificate.renew_certificate)
            return

        if phase == P.authenticated:
            machine.require_transition(P.registering)
            try:
                await self._register_device()
            except MediabootError as e:
                machine.transition_to(P.authenticated)
                machine.set_error(f"Registration failed: {e.message}")
                raise
            machine.require_transition(P.registered)
        elif phase != P.registered:
            raise InvalidTransitionError(phase.label, P.registering.label)

        await self._acquire_certificate()

    async def _register_device(self) -> None:
        registration = self.ctx.registration
        await asyncio.to_thread(registration.register)
        if await asyncio.to_thread(registration.check_tunnel):
            log.info("Control-plane tunnel is available")

    async def _acquire_certificate(self) -> None:
        ctx = self.ctx
        machine = ctx.machine
        try:
            await asyncio.to_thread(ctx.certificate.renew_certificate)
            if not ctx.certificate.has_valid_certificate():
                raise RemoteServiceError(ctx.certificate.service_name, reason="Certificate was not acquired")
        except MediabootError as e:
            machine.transition_to(P.registered)
            machine.set_error(f"Registration completed but certificate was not acquired: {e.message}")
            raise
        machine.require_transition(P.certificate_acquired)
        machine.require_transition(P.complete)
        log.info("Setup complete")

    async def _after_callback_login(self) -> None:
        try:
            if not self.ctx.discovery.discovered:
                await self._discover()
            await self.register()
        except MediabootError as e:
            log.error("Post-auth registration failed: %s", e.message)

    # ---------- setup listener ----------

    async def _start_setup_listener(self) -> None:
        try:
            await self.ctx.listener.start()
        except OSError as e:
            log.error("Could not start setup listener on port %d: %s", self.ctx.settings.INTERNAL_PORT, e)
            return
        self._listener_watch = asyncio.create_task(self._stop_listener_when_complete())

    async def _stop_listener_when_complete(self) -> None:
        await self.ctx.machine.wait_for_complete()
        await self.ctx.listener.stop()

    # ---------- degraded mode ----------

    def _enter_degraded_mode(self) -> None:
        done = self.runner.completed_tasks
        ctx = self.ctx
        owed = [t for t in self._caller_tasks if t.name not in done]
        deferred = DeferredTaskSet(
            api_keys_loaded="api_info" in done,
            keys_refreshed="api_info" in done and not ctx.api_info.loaded_from_cache,
            authenticated="auth" in done,
            network_discovered="network_discovery" in done,
            seeds_run=not owed,
            registered="register" in done,
            caller_tasks=owed,
        )
        steps = RecoverySteps(
            load_keys=lambda: asyncio.to_thread(ctx.api_info.load),
            authenticate=self.authenticate,
            discover=self._discover,
            register=self.register,
            refresh_keys=self._refresh_cached_api_info,
            is_registered=lambda: ctx.registration.is_registered and ctx.machine.current_phase == P.complete,
            has_access_token=lambda: bool(ctx.auth.access_token),
        )
        self.recovery = DegradedRecoveryLoop(
            deferred, steps, ctx.probe.check,
            backoff=ctx.settings.recovery_backoff(), sleep=self._recovery_sleep,
        )
        self.recovery_task = asyncio.create_task(self.recovery.run())

    # ---------- shutdown ----------

    async def shutdown(self, timeout: float = 5.0) -> None:
        if self.recovery is not None:
            self.recovery.stop()
        if self.recovery_task is not None and not self.recovery_task.done():
            try:
                await asyncio.wait_for(self.recovery_task, timeout)
            except asyncio.TimeoutError:
                log.warning("Recovery loop did not stop within %ss; cancelled", timeout)
        if self._listener_watch is not None:
            self._listener_watch.cancel()
            try:
                await self._listener_watch
            except asyncio.CancelledError:
                pass
        await self.ctx.listener.stop()
        for client in (self.ctx.identity, self.ctx.registration, self.ctx.certificate,
                       self.ctx.api_info.client, self.ctx.discovery.client):
            client.close()
