"""
Verb implementation probing and process execution.

A component directory implements a verb with, in order of preference:
a Makefile with a `<verb>:` target, an executable `<verb>` script, or a
`<verb>.sh` script run through sh.

The process runs to completion; stdout and stderr are captured, and
relayed line by line to the console streams while the process runs.

InterruptGuard turns the first SIGINT or SIGTERM into a flag, so the
running child finishes and is recorded before the run stops. A second
signal raises KeyboardInterrupt.
"""

import logging
import os
import shutil
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Mapping, Optional, Sequence

from stackctl.errors import ExecutionError
from stackctl.utils import console, err_console

logger = logging.getLogger("stackctl")


@dataclass(frozen=True)
class Implementation:
    """How to run one verb of one component."""
    args: tuple[str, ...]
    directory: Path
    path: str

    def describe(self) -> str:
        return " ".join(self.args)


@dataclass
class ProcessResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _has_make_target(makefile: Path, verb: str) -> bool:
    text = makefile.read_text(errors="replace")
    return text.startswith(verb + ":") or ("\n" + verb + ":") in text


def detect_implementation(directory: Path, verb: str) -> Optional[Implementation]:
    """Find the implementation of a verb; None when the directory has none."""
    makefile = directory / "Makefile"
    if makefile.is_file() and _has_make_target(makefile, verb):
        make = shutil.which("make") or "/usr/bin/make"
        return Implementation(args=(make, verb), directory=directory, path=make)

    script = directory / verb
    if script.is_file() and os.access(script, os.X_OK):
        return Implementation(args=(str(script),), directory=directory, path=str(script))

    shell_script = directory / f"{verb}.sh"
    if shell_script.is_file():
        sh = shutil.which("sh") or "/bin/sh"
        return Implementation(args=(sh, str(shell_script)), directory=directory, path=str(shell_script))
    return None


def find_implementation(component: str, directory: Path, verb: str) -> Implementation:
    """
    Raises:
        ExecutionError: If the directory does not exist or implements no such verb
    """
    if not directory.is_dir():
        raise ExecutionError(component, f"Component directory `{directory}` not found")
    implementation = detect_implementation(directory, verb)
    if implementation is None:
        raise ExecutionError(
            component,
            f"No `{verb}` implementation found in `{directory}`: no Makefile target, `{verb}` or `{verb}.sh` script",
        )
    return implementation


def _pump(stream: IO[str], chunks: list[str], relay: Optional[IO[str]]) -> None:
    for line in iter(stream.readline, ""):
        chunks.append(line)
        if relay is not None:
            relay.write(line)
            relay.flush()
    stream.close()


def run_verb(
    component: str,
    implementation: Implementation,
    env: Mapping[str, str],
    relay: bool = True,
    extra_args: Sequence[str] = (),
) -> ProcessResult:
    """
    Run an implementation and wait for it to exit.

    One reader thread per stream captures the output (and relays it when
    asked); both complete before the result is returned.

    Raises:
        ExecutionError: If the process cannot be started
    """
    args = list(implementation.args) + list(extra_args)
    if relay:
        console.file.write(f"--- Dir: {implementation.directory}\n")
        console.file.write(f"--- File: {implementation.path}\n")
        if len(args) > 1:
            console.file.write(f"--- Args: {args[1:]}\n")
        console.file.flush()

    logger.debug(f"Running {' '.join(args)} in {implementation.directory}")
    try:
        process = subprocess.Popen(
            args,
            cwd=implementation.directory,
            env=dict(env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        )
    except OSError as e:
        raise ExecutionError(component, f"Unable to start `{implementation.describe()}`: {e}", cause=e)

    stdout: list[str] = []
    stderr: list[str] = []
    readers = [
        threading.Thread(target=_pump, args=(process.stdout, stdout, console.file if relay else None)),
        threading.Thread(target=_pump, args=(process.stderr, stderr, err_console.file if relay else None)),
    ]
    for reader in readers:
        reader.start()
    for reader in readers:
        reader.join()
    returncode = process.wait()

    if relay:
        console.file.write("---\n")
        console.file.flush()
    return ProcessResult(returncode=returncode, stdout="".join(stdout), stderr="".join(stderr))


class InterruptGuard:
    """
    Records SIGINT/SIGTERM instead of raising while a run is in progress.

    Usage:
        with InterruptGuard() as guard:
            for component in components:
                run(component)
                if guard.interrupted:
                    break

    Handlers are only installed from the main thread; elsewhere the guard
    never trips. Previous handlers are restored on exit.
    """

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self):
        self.interrupted: Optional[str] = None
        self._previous: dict[int, Any] = {}

    def _handle(self, signum, frame) -> None:
        name = signal.Signals(signum).name
        if self.interrupted:
            logger.warning(f"{name} received again, exiting")
            raise KeyboardInterrupt
        self.interrupted = name
        logger.warning(
            f"{name} received, stopping after the current component. Send it again to force exit",
            extra={"event": "interrupted"},
        )

    def __enter__(self) -> "InterruptGuard":
        if threading.current_thread() is not threading.main_thread():
            return self
        for signum in self.SIGNALS:
            self._previous[signum] = signal.signal(signum, self._handle)
        return self

    def __exit__(self, *exc) -> None:
        for signum, handler in self._previous.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        self._previous.clear()
