# vaultsync/app.py
"""
Interactive sync client.

A slash-command REPL that walks the user through choosing a server, logging
in and synchronizing one local vault file. Network work runs on a single
background worker while the prompt shows a spinner.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from functools import partial
import logging
import os
try:
    import readline
except ImportError:  # pragma: no cover
    readline = None
from shutil import get_terminal_size
import threading
from typing import Any, Callable, Optional

from rich.console import Console
from rich.prompt import Confirm, Prompt

from .commands import COMMANDS
from .configuration import (
    ConfigurationBundle,
    Diagnostic,
    load_runtime_configuration,
    provision_data_dir,
    resolve_data_dir,
)
from .errors import UnauthorizedError
from .logging_utils import setup_logging
from .screens import ScreenEvent, ScreenMachine, ScreenState, initial_state
from .slash_commands import CommandRouter
from .sync import (
    SessionStore,
    SyncOrchestrator,
    SyncResult,
    SyncSession,
    VaultAPIClient,
    open_session,
)

logger = logging.getLogger("vaultsync")
TRUE_STRINGS = {"1", "true", "yes", "on"}
FALSE_STRINGS = {"0", "false", "no", "off"}
POLL_INTERVAL = 0.1


class _NoOpStatus:
    """Fallback status handle when UI verbosity is disabled."""

    def __enter__(self) -> "_NoOpStatus":
        return self

    def __exit__(self, *_exc) -> None:  # pragma: no cover - trivial
        return None

    def update(self, *_args, **_kwargs) -> None:  # pragma: no cover - trivial
        pass


def _ask_password(prompt: str) -> str:
    return Prompt.ask(prompt, password=True)


def _confirm(prompt: str) -> bool:
    return Confirm.ask(prompt, default=True)


@dataclass
class ClientRuntime:
    """Everything the slash commands act on during one client run."""

    config: ConfigurationBundle
    session: SyncSession
    session_store: SessionStore
    orchestrator: SyncOrchestrator
    screen: ScreenMachine
    client_factory: Callable[[str], VaultAPIClient]
    console: Console = field(default_factory=Console)
    verbose: bool = True
    ask_password: Callable[[str], str] = _ask_password
    confirm: Callable[[str], bool] = _confirm
    executor: ThreadPoolExecutor = field(
        default_factory=lambda: ThreadPoolExecutor(max_workers=1, thread_name_prefix="vaultsync-worker")
    )

    def client(self) -> VaultAPIClient:
        return self.client_factory(self.session.server_url)

    def set_session(self, session: SyncSession) -> None:
        self.session = session
        self.session_store.save(session)

    def run_in_background(
        self,
        label: str,
        fn: Callable[[], Any],
        cancel: Optional[threading.Event] = None,
    ) -> Any:
        """Run ``fn`` on the worker while the prompt shows a spinner.

        Ctrl-C sets ``cancel`` (when given) and waits for the worker to notice;
        exceptions raised by ``fn`` propagate to the caller.
        """
        future: Future = self.executor.submit(fn)
        status_cm = self.console.status(f"[cyan]{label}", spinner="dots") if self.verbose else _NoOpStatus()
        with status_cm:
            while True:
                try:
                    return future.result(timeout=POLL_INTERVAL)
                except FutureTimeout:
                    continue
                except KeyboardInterrupt:
                    if cancel is None:
                        raise
                    logger.info("Cancellation requested for: %s", label)
                    cancel.set()
                    return future.result()

    def perform(self, label: str, work: Callable[[threading.Event], Any]) -> Any:
        """Run cancellable work through the Busy screen and route the outcome."""
        self.screen.dispatch(ScreenEvent.WORK_STARTED)
        cancel = threading.Event()
        try:
            outcome = self.run_in_background(label, lambda: work(cancel), cancel)
        except UnauthorizedError:
            self._expire_session()
            raise
        except Exception:
            self._settle(failed=True)
            raise

        if isinstance(outcome, SyncResult):
            if isinstance(outcome.error, UnauthorizedError):
                self._expire_session()
            else:
                self._settle(failed=not outcome.success)
        else:
            self._settle(failed=False)
        return outcome

    def _settle(self, failed: bool) -> None:
        # The screen follows the orchestrator: an unresolved conflict stays on screen.
        if self.orchestrator.pending is not None:
            self.screen.dispatch(ScreenEvent.CONFLICT_FOUND)
        elif failed:
            self.screen.dispatch(ScreenEvent.WORK_FAILED)
        else:
            self.screen.dispatch(ScreenEvent.WORK_DONE)

    def _expire_session(self) -> None:
        logger.info("Session for %s is no longer valid", self.session.username or "(anonymous)")
        self.set_session(self.session.logged_out())
        self.orchestrator.abandon()
        self.screen.dispatch(ScreenEvent.AUTH_EXPIRED)

    def close(self) -> None:
        self.executor.shutdown(wait=True)
        if self.session.lock is not None:
            self.session.lock.release()


def build_runtime(
    config: ConfigurationBundle,
    *,
    console: Optional[Console] = None,
    client_factory: Optional[Callable[[str], VaultAPIClient]] = None,
    ask_password: Callable[[str], str] = _ask_password,
    confirm: Callable[[str], bool] = _confirm,
    verbose: bool = True,
) -> ClientRuntime:
    """Open the vault session and wire the orchestrator and screen machine."""

    client_cfg = config.section("client")
    timeout = float(client_cfg.get("timeout", 30))
    if client_factory is None:
        client_factory = partial(VaultAPIClient, timeout=timeout)

    vault_path = config.resolve_path(str(client_cfg.get("vault_path") or "vault.kdbx"))
    store = SessionStore(config.resolve_path(str(client_cfg.get("session_file") or "state/session.json")))
    session = store.load(open_session(vault_path, str(client_cfg.get("server_url") or "")))

    orchestrator = SyncOrchestrator(
        client_factory,
        config.resolve_path(str(client_cfg.get("baseline_file") or "state/sync_baseline.json")),
    )
    screen = ScreenMachine(initial_state(bool(session.server_url), session.authenticated))
    logger.info(
        "Client runtime ready: vault=%s server=%s read_only=%s",
        vault_path,
        session.server_url or "(unset)",
        session.read_only,
    )
    return ClientRuntime(
        config=config,
        session=session,
        session_store=store,
        orchestrator=orchestrator,
        screen=screen,
        client_factory=client_factory,
        console=console or Console(),
        verbose=verbose,
        ask_password=ask_password,
        confirm=confirm,
    )


def print_banner() -> None:
    """Print the client header."""

    terminal_width = get_terminal_size(fallback=(80, 24)).columns

    def _wide_banner() -> str:
        inner_width = 78
        title = "VAULTSYNC"
        slogan = "upload ◇ version ◇ restore"

        def _line(content: str = "") -> str:
            return f"║{content.center(inner_width)}║"

        lines = [
            "╔" + "═" * inner_width + "╗",
            _line(),
            _line(title),
            _line(slogan),
            _line(),
            "╚" + "═" * inner_width + "╝",
        ]
        return "\n".join(lines)

    banner = _wide_banner() if terminal_width >= 80 else "VaultSync"

    print(banner)
    print()


def _parse_env_flag(value: str, *, default: bool = True) -> bool:
    normalized = value.strip().lower()
    if normalized in TRUE_STRINGS:
        return True
    if normalized in FALSE_STRINGS:
        return False
    return default


def _resolve_ui_verbose(config_bundle: ConfigurationBundle) -> bool:
    """Resolve whether the client should show spinners and the banner."""

    env_value = os.environ.get("VAULTSYNC_UI_VERBOSE")
    if env_value is not None:
        return _parse_env_flag(env_value)

    verbose_setting = config_bundle.section("ui").get("verbose")
    if verbose_setting is None:
        return True
    return bool(verbose_setting)


def build_router(config: ConfigurationBundle, runtime: ClientRuntime) -> CommandRouter:
    router = CommandRouter(config, metadata={"runtime": runtime})
    for command in COMMANDS:
        router.register(command)
    return router


def emit_configuration_report(config: ConfigurationBundle) -> None:
    """Print diagnostics so operators can correct issues quickly."""

    if not config.diagnostics:
        print(
            f"[config] Loaded {len(config.files_loaded)} file(s) "
            f"from repo and data config directories."
        )
        return

    print("[config] Diagnostics:")
    for diag in config.diagnostics:
        prefix = diag.source or config.data_dir
        print(f"  - ({diag.level.upper()}) {diag.message} [{prefix}]")


def screen_hint(runtime: ClientRuntime) -> str:
    state = runtime.screen.state
    if state is ScreenState.SERVER_SETUP:
        return "No server configured. Use /server <url>."
    if state is ScreenState.LOGIN:
        return f"Server {runtime.session.server_url}. Use /login <user> or /register <user>."
    if state is ScreenState.CONFLICT:
        return "Both copies changed. Use /keep-local or /keep-remote."
    if state is ScreenState.READY:
        mode = " (read-only)" if runtime.session.read_only else ""
        return f"Logged in as {runtime.session.username}{mode}. Use /sync or /versions."
    return ""


def configure_autocomplete(router: CommandRouter) -> None:
    """Enable readline tab completion for slash commands."""

    if readline is None:
        return

    commands = list(router.command_names)

    def completer(text: str, state: int):
        buffer = readline.get_line_buffer()
        if not buffer.startswith("/"):
            return None
        fragment = text[1:] if text.startswith("/") else text
        matches = [f"/{cmd}" for cmd in commands if cmd.startswith(fragment)]
        if state < len(matches):
            return matches[state]
        return None

    readline.set_completer(completer)
    readline.parse_and_bind("tab: complete")
    readline.set_completer_delims(" \t")


def execute_cli_command(
    command_line: str,
    router: CommandRouter,
    *,
    suppress_output: bool = False,
) -> str:
    """Run one slash command line (without the leading slash)."""

    stripped = command_line.strip()
    if not stripped:
        return ""

    parts = stripped.split()
    command, args = parts[0], parts[1:]
    result = router.handle(command, args)
    if not suppress_output:
        print(result)
    logger.info("Executed CLI command: /%s", command)
    return result


def main() -> None:
    """Entry point for the ``vaultsync`` client."""

    data_dir = resolve_data_dir()
    provision_data_dir(data_dir)
    config_bundle = load_runtime_configuration(data_dir)
    ui_verbose = _resolve_ui_verbose(config_bundle)
    if ui_verbose:
        print_banner()

    logging_cfg = config_bundle.section("logging")
    log_path = setup_logging(
        config_bundle.data_dir,
        str(logging_cfg.get("level") or "INFO"),
        structured=bool(logging_cfg.get("structured", True)),
        console_level="WARNING",
    )
    config_bundle.log_path = log_path
    try:
        log_path.relative_to(config_bundle.data_dir)
    except ValueError:
        config_bundle.diagnostics.append(
            Diagnostic(
                level="warning",
                message=f"Data log directory is not writable; logging to fallback path '{log_path}'.",
                source=log_path,
            )
        )
    logger.info("Logging initialized at %s", log_path)
    if ui_verbose:
        emit_configuration_report(config_bundle)

    runtime = build_runtime(config_bundle, verbose=ui_verbose)
    router = build_router(config_bundle, runtime)
    configure_autocomplete(router)
    if runtime.session.read_only:
        print("[vault] Another process holds the vault lock; running read-only.")

    try:
        while runtime.screen.state is not ScreenState.EXITED:
            hint = screen_hint(runtime)
            if hint and ui_verbose:
                runtime.console.print(f"[dim]{hint}[/dim]")
            try:
                raw_line = input("> ")
            except (EOFError, KeyboardInterrupt):
                print("\n[Exiting VaultSync]")
                break

            line = raw_line.strip()
            if not line:
                continue
            if line.lower() in {"quit", "exit"}:
                print("[Goodbye]")
                break
            if not line.startswith("/"):
                print("[router] Commands start with '/'. Try /help.")
                continue
            command_line = line[1:]
            if command_line.lower() == "exit":
                command_line = "quit"
            execute_cli_command(command_line, router)
    finally:
        runtime.close()


__all__ = [
    "ClientRuntime",
    "build_router",
    "build_runtime",
    "execute_cli_command",
    "main",
]
