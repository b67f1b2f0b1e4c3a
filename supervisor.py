"""Lifecycle of locally supervised provider processes (litellm, cliproxyapi)."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from config import AppConfig
from providers import SUPERVISED_KINDS, ProviderKind, ProviderSettings

log = logging.getLogger("claude_proxy")
proc_log = logging.getLogger("claude_proxy.process")

Launcher = Callable[..., Awaitable[Any]]

STOP_TIMEOUT_S = 5.0


@dataclass(frozen=True)
class ProcessSpec:
    """How to launch one supervised process."""

    kind: ProviderKind
    argv: Tuple[str, ...]
    cwd: str
    config_path: str
    port: int
    env: Tuple[Tuple[str, str], ...] = ()


def _expand(path: str) -> str:
    return str(Path(path).expanduser())


def build_process_spec(kind: ProviderKind, settings: ProviderSettings) -> Optional[ProcessSpec]:
    """Launch spec for an enabled supervised provider; None when disabled."""
    if not settings.enabled:
        return None
    bin_path = _expand(settings.bin_path)
    config_path = _expand(settings.config_path)
    port = settings.port
    if kind is ProviderKind.LITELLM:
        argv = (bin_path, "--config", config_path, "--host", "127.0.0.1", "--port", str(port))
        env: Tuple[Tuple[str, str], ...] = ()
    elif kind is ProviderKind.CLIPROXYAPI:
        argv = (bin_path, "--config", config_path)
        env = (("PORT", str(port)),)
    else:
        raise ValueError(f"{kind.value} is not a supervised provider")
    return ProcessSpec(
        kind=kind,
        argv=argv,
        cwd=str(Path(config_path).parent),
        config_path=config_path,
        port=port,
        env=env,
    )


class SupervisedProcess:
    """
    One local provider process.

    start/stop/restart are serialized by a lock. Each restart bumps
    ``generation``; a caller that observed an older generation before its
    request failed skips the restart because someone else already did it.
    """

    def __init__(self, kind: ProviderKind, launcher: Optional[Launcher] = None) -> None:
        self.kind = kind
        self._launcher: Launcher = launcher or asyncio.create_subprocess_exec
        self._lock = asyncio.Lock()
        self._proc: Any = None
        self._pumps: List[asyncio.Task[None]] = []
        self._spec: Optional[ProcessSpec] = None
        self.generation = 0

    @property
    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def spec(self) -> Optional[ProcessSpec]:
        """Last spec applied by start/restart (even when the launch failed)."""
        return self._spec

    async def start(self, spec: ProcessSpec) -> bool:
        async with self._lock:
            return await self._start_locked(spec)

    async def stop(self) -> None:
        async with self._lock:
            await self._stop_locked()

    async def restart(self, spec: Optional[ProcessSpec], observed_generation: Optional[int] = None) -> bool:
        """
        Stop and start again. With observed_generation, skip when another
        restart already happened since that generation was read.
        """
        async with self._lock:
            if observed_generation is not None and observed_generation != self.generation:
                log.info("[%s] restart already done by a concurrent request", self.kind.value)
                return self.is_running
            return await self._replace_locked(spec)

    async def apply(self, spec: Optional[ProcessSpec]) -> bool:
        """Bring the process in line with spec; no-op when spec is already applied."""
        async with self._lock:
            if spec == self._spec:
                return self.is_running
            return await self._replace_locked(spec)

    async def _replace_locked(self, spec: Optional[ProcessSpec]) -> bool:
        await self._stop_locked()
        self.generation += 1
        if spec is None:
            self._spec = None
            return False
        return await self._start_locked(spec)

    async def _start_locked(self, spec: ProcessSpec) -> bool:
        if self.is_running:
            await self._stop_locked()
        self._spec = spec

        if not Path(spec.config_path).exists():
            log.warning("[%s] config file not found: %s", self.kind.value, spec.config_path)
            return False

        log.info("Starting %s: %s", self.kind.value, " ".join(spec.argv))
        env = {**os.environ, **dict(spec.env)} if spec.env else None
        try:
            proc = await self._launcher(
                *spec.argv,
                cwd=spec.cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            log.error("[%s] failed to start: %s", self.kind.value, e)
            self._proc = None
            return False

        self._proc = proc
        self._pumps = [
            asyncio.create_task(self._pump(stream, level), name=f"claude_proxy.{self.kind.value}.{label}")
            for stream, level, label in (
                (getattr(proc, "stdout", None), logging.INFO, "stdout"),
                (getattr(proc, "stderr", None), logging.WARNING, "stderr"),
            )
            if stream is not None
        ]
        log.info("%s started (pid=%s port=%s)", self.kind.value, getattr(proc, "pid", None), spec.port)
        return True

    async def _stop_locked(self) -> None:
        proc = self._proc
        self._proc = None
        if proc is not None and proc.returncode is None:
            log.info("Stopping %s (pid=%s)", self.kind.value, getattr(proc, "pid", None))
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=STOP_TIMEOUT_S)
            except asyncio.TimeoutError:
                log.warning("%s did not exit in %.1fs; killing", self.kind.value, STOP_TIMEOUT_S)
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
            log.info("%s exited code=%s", self.kind.value, proc.returncode)
        for task in self._pumps:
            task.cancel()
        for task in self._pumps:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._pumps = []

    async def _pump(self, stream: asyncio.StreamReader, level: int) -> None:
        """Forward process output to the log line by line."""
        while True:
            line = await stream.readline()
            if not line:
                return
            proc_log.log(level, "[%s] %s", self.kind.value, line.decode("utf-8", errors="replace").rstrip())


class ProcessManager:
    """The set of supervised processes shared by all requests."""

    def __init__(self, launcher: Optional[Launcher] = None) -> None:
        self._processes: Dict[ProviderKind, SupervisedProcess] = {
            kind: SupervisedProcess(kind, launcher) for kind in SUPERVISED_KINDS
        }
        self._reconcile_task: Optional[asyncio.Task[None]] = None
        self._pending_config: Optional[AppConfig] = None

    def get(self, kind: Optional[ProviderKind]) -> Optional[SupervisedProcess]:
        if kind is None:
            return None
        return self._processes.get(kind)

    async def start_all(self, config: AppConfig) -> None:
        for kind, proc in self._processes.items():
            spec = build_process_spec(kind, config.provider(kind))
            if spec is not None:
                await proc.start(spec)

    async def stop_all(self) -> None:
        self._pending_config = None
        task = self._reconcile_task
        if task is not None and not task.done():
            await task
        for proc in self._processes.values():
            await proc.stop()

    async def restart(
        self, kind: ProviderKind, config: AppConfig, observed_generation: Optional[int] = None
    ) -> bool:
        proc = self._processes[kind]
        spec = build_process_spec(kind, config.provider(kind))
        return await proc.restart(spec, observed_generation)

    def _changed(self, config: AppConfig) -> List[ProviderKind]:
        return [
            kind
            for kind, proc in self._processes.items()
            if build_process_spec(kind, config.provider(kind)) != proc.spec
        ]

    async def reconcile(self, config: AppConfig, kinds: Optional[Iterable[ProviderKind]] = None) -> None:
        """Restart or stop processes whose launch settings changed since they were applied."""
        selected = set(kinds) if kinds is not None else None
        for kind in self._changed(config):
            if selected is not None and kind not in selected:
                continue
            log.info("%s settings changed; applying", kind.value)
            await self._processes[kind].apply(build_process_spec(kind, config.provider(kind)))

    def reconcile_soon(self, config: AppConfig) -> None:
        """
        Reconcile in a background task so no request waits on another provider's restart.

        One task runs at a time; configs arriving meanwhile collapse into the latest.
        """
        if not self._changed(config):
            return
        self._pending_config = config
        if self._reconcile_task is None or self._reconcile_task.done():
            self._reconcile_task = asyncio.create_task(
                self._drain_reconcile(), name="claude_proxy.reconcile"
            )

    async def _drain_reconcile(self) -> None:
        while self._pending_config is not None:
            config, self._pending_config = self._pending_config, None
            try:
                await self.reconcile(config)
            except Exception:
                log.exception("Background reconcile failed")
