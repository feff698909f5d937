# services.py
from __future__ import annotations

import enum
import logging
import os
import re
import socket
import subprocess
import threading
import time
import urllib.error
import urllib.request
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Mapping, Optional

from .errors import CIError, ServiceUnavailable, StageCancelled
from .model import ReadinessProbe, ServiceDependency, Stage
from .proc import spawn, terminate
from .secrets import SecretStore

logger = logging.getLogger(__name__)

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
}


class ProbeState(str, enum.Enum):
    STARTING = "starting"
    PROBING = "probing"
    READY = "ready"
    UNAVAILABLE = "unavailable"
    STOPPED = "stopped"


def _env_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", name).upper()


class ServiceHandle:
    """
    One started service instance. stop() tears it down exactly once, no
    matter how many times or from which thread it is called.
    """

    def __init__(
        self,
        service: ServiceDependency,
        stage_id: str,
        *,
        stop: Callable[[], None],
        alive: Callable[[], bool],
        host: str = "127.0.0.1",
        ident: str | None = None,
    ):
        self.service = service
        self.stage_id = stage_id
        self.host = host
        self.ident = ident
        self.state = ProbeState.STARTING
        self.stop_count = 0
        self._stop = stop
        self._alive = alive
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self.service.name

    def alive(self) -> bool:
        return self._alive()

    def stop(self) -> None:
        with self._lock:
            if self.state == ProbeState.STOPPED:
                return
            self.state = ProbeState.STOPPED
            self.stop_count += 1
        logger.debug("[%s] stopping service %s", self.stage_id, self.name)
        self._stop()

    def env(self) -> Dict[str, str]:
        """Coordinates handed to the stage's job."""
        prefix = f"GATECI_SERVICE_{_env_name(self.name)}"
        env = {f"{prefix}_HOST": self.host}
        if self.service.ports:
            env[f"{prefix}_PORT"] = str(self.service.ports[0])
            env[f"{prefix}_PORTS"] = ",".join(str(p) for p in self.service.ports)
        return env


# ---------------------------------------------------------------------
# Launchers
# ---------------------------------------------------------------------

class ProcessLauncher:
    """Runs a service as a local process (its own process group)."""

    def __init__(self, grace_period: float = 5.0):
        self.grace_period = grace_period

    def launch(
        self,
        service: ServiceDependency,
        *,
        run_id: str,
        stage_id: str,
        environ: Optional[Mapping[str, str]] = None,
    ) -> ServiceHandle:
        env = dict(os.environ if environ is None else environ)
        env.update(service.env)
        try:
            proc = spawn(service.command, env=env, capture=False)
        except OSError as e:
            raise ServiceUnavailable(
                f"service '{service.name}' could not be started: {e}",
                stage=stage_id,
                details={"service": service.name},
            ) from e
        logger.info("[%s] started service %s (pid %d)", stage_id, service.name, proc.pid)
        return ServiceHandle(
            service,
            stage_id,
            stop=lambda: terminate(proc, self.grace_period),
            alive=lambda: proc.poll() is None,
            ident=str(proc.pid),
        )


def _check_docker_available(docker: str) -> None:
    """Check if Docker is available, raise helpful error if not."""
    try:
        subprocess.run([docker, "--version"], capture_output=True, check=True)
    except (subprocess.CalledProcessError, FileNotFoundError):
        raise CIError(
            kind="docker_unavailable",
            message="Docker is not available",
            details={"hint": TOOL_HINTS["docker"]},
        ) from None


class DockerLauncher:
    """Runs a service as a detached container with its ports published on localhost."""

    def __init__(self, grace_period: float = 5.0, docker: str = "docker"):
        self.grace_period = grace_period
        self.docker = docker

    def container_name(self, service: ServiceDependency, *, run_id: str, stage_id: str) -> str:
        raw = f"gateci-{run_id[:12]}-{stage_id}-{service.name}"
        return re.sub(r"[^a-zA-Z0-9_.-]", "-", raw)

    def launch(
        self,
        service: ServiceDependency,
        *,
        run_id: str,
        stage_id: str,
        environ: Optional[Mapping[str, str]] = None,
    ) -> ServiceHandle:
        try:
            _check_docker_available(self.docker)
        except CIError as e:
            raise ServiceUnavailable(e.message, stage=stage_id, details={"service": service.name, **e.details}) from e

        name = self.container_name(service, run_id=run_id, stage_id=stage_id)
        cmd = [self.docker, "run", "-d", "--rm", "--name", name]
        for port in service.ports:
            cmd.extend(["-p", f"{port}:{port}"])
        for key, value in service.env.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.append(service.image)
        if service.command:
            cmd.extend(["sh", "-c", service.command])

        proc = subprocess.run(cmd, text=True, capture_output=True, env=None if environ is None else dict(environ))
        if proc.returncode != 0:
            raise ServiceUnavailable(
                f"service '{service.name}' container failed to start",
                stage=stage_id,
                details={"service": service.name, "image": service.image, "stderr": proc.stderr.strip()[-2000:]},
            )
        logger.info("[%s] started service %s (container %s)", stage_id, service.name, name)

        def _stop() -> None:
            subprocess.run(
                [self.docker, "stop", "-t", str(int(self.grace_period)), name],
                capture_output=True,
            )
            # --rm normally removes it; rm -f covers a container that never stopped cleanly
            subprocess.run([self.docker, "rm", "-f", name], capture_output=True)

        def _alive() -> bool:
            out = subprocess.run(
                [self.docker, "inspect", "-f", "{{.State.Running}}", name],
                text=True,
                capture_output=True,
            )
            return out.returncode == 0 and out.stdout.strip() == "true"

        return ServiceHandle(service, stage_id, stop=_stop, alive=_alive, ident=name)


# ---------------------------------------------------------------------
# Readiness probes
# ---------------------------------------------------------------------

def probe_once(probe: ReadinessProbe, timeout: float) -> bool:
    """Run one readiness check. Never raises for an unready service."""
    timeout = max(timeout, 0.1)
    if probe.kind == "command":
        try:
            proc = subprocess.run(probe.command, shell=True, capture_output=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            return False
        return proc.returncode == 0

    if probe.kind == "tcp":
        try:
            with socket.create_connection((probe.host, probe.port), timeout=timeout):
                return True
        except OSError:
            return False

    if probe.kind == "http":
        try:
            with urllib.request.urlopen(probe.url, timeout=timeout) as response:
                return response.status < 400
        except (urllib.error.URLError, OSError, ValueError):
            return False

    raise ValueError(f"Unknown probe kind: {probe.kind!r}")


class ServiceDependencyManager:
    """
    Starts the services a stage declares, gates on their readiness and tears
    them down after the stage's job, on every exit path.

    Services are never shared: every stage gets fresh instances even when
    two declarations are identical.
    """

    def __init__(
        self,
        *,
        process_launcher: Optional[ProcessLauncher] = None,
        docker_launcher: Optional[DockerLauncher] = None,
        probe: Callable[[ReadinessProbe, float], bool] = probe_once,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.process_launcher = process_launcher or ProcessLauncher()
        self.docker_launcher = docker_launcher or DockerLauncher()
        self._probe = probe
        self._clock = clock

    def launcher_for(self, service: ServiceDependency):
        return self.docker_launcher if service.image else self.process_launcher

    @contextmanager
    def running(
        self,
        stage: Stage,
        *,
        run_id: str,
        cancel_event: Optional[threading.Event] = None,
        secrets: Optional[SecretStore] = None,
    ) -> Iterator[Dict[str, str]]:
        """
        Start every service of `stage`, wait until all are ready and yield
        the environment describing them. Raises ServiceUnavailable (the body
        never runs) if one is not ready in time.

        Services never see the run's secrets: they start from the host
        environment with every secret-bearing variable removed.
        """
        environ = (secrets or SecretStore()).scrub(os.environ)
        handles: List[ServiceHandle] = []
        try:
            for service in stage.services:
                handle = self.launcher_for(service).launch(
                    service, run_id=run_id, stage_id=stage.id, environ=environ
                )
                handles.append(handle)
                self.wait_ready(handle, cancel_event=cancel_event)

            env: Dict[str, str] = {}
            for handle in handles:
                env.update(handle.env())
            yield env
        finally:
            for handle in reversed(handles):
                try:
                    handle.stop()
                except Exception:
                    # keep tearing down the others
                    logger.exception("[%s] failed to stop service %s", stage.id, handle.name)

    def wait_ready(self, handle: ServiceHandle, *, cancel_event: Optional[threading.Event] = None) -> None:
        """starting -> probing -> ready | unavailable"""
        service = handle.service
        probe = service.probe
        waiter = cancel_event or threading.Event()
        handle.state = ProbeState.PROBING

        if probe is None:
            if handle.alive():
                handle.state = ProbeState.READY
                return
            handle.state = ProbeState.UNAVAILABLE
            raise ServiceUnavailable(
                f"service '{service.name}' exited right after start",
                stage=handle.stage_id,
                details={"service": service.name},
            )

        deadline = self._clock() + probe.timeout
        attempts = 0
        reason = "readiness probe never succeeded"
        while True:
            if cancel_event is not None and cancel_event.is_set():
                handle.state = ProbeState.UNAVAILABLE
                raise StageCancelled(stage=handle.stage_id)
            if not handle.alive():
                reason = "service exited before becoming ready"
                break

            attempts += 1
            remaining = deadline - self._clock()
            if self._probe(probe, min(max(probe.interval, 1.0), max(remaining, 0.1))):
                handle.state = ProbeState.READY
                logger.info("[%s] service %s ready after %d probe(s)", handle.stage_id, service.name, attempts)
                return

            if attempts >= probe.retries or self._clock() >= deadline:
                break
            waiter.wait(min(probe.interval, max(deadline - self._clock(), 0.0)))

        handle.state = ProbeState.UNAVAILABLE
        logger.warning("[%s] service %s unavailable: %s", handle.stage_id, service.name, reason)
        raise ServiceUnavailable(
            f"service '{service.name}' not ready: {reason}",
            stage=handle.stage_id,
            details={"service": service.name, "attempts": attempts, "timeout": probe.timeout},
        )
