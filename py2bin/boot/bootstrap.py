"""Carrier startup hook.

The patched interpreter calls :func:`run` before any user code. It reads the
app payload that was patched into the reserved ``_py2bin_app_main`` entry of
the runtime's embedded source table, decodes it, and executes it as
``__main__`` under a file name next to the executable, so the app sees the
same ``sys.argv`` shape as ``python <app>.py ...``.

Worker processes started by the runtime's cluster support carry the
``PY2BIN_UNIQUE_ID`` environment variable. For those, argv already contains
the synthetic file name (inherited from the parent), so the bootstrap only
runs the runtime's worker setup and removes the variable before handing over.
"""

from collections.abc import MutableMapping
import enum
import importlib
import os
import sys
import types
from typing import Protocol

from .codec import CorruptPayloadError, Payload, decode_payload, truncate_at_terminator


APP_MODULE_NAME: str = "_py2bin_app_main"
RUNTIME_MODULE_NAME: str = "_py2bin_runtime"
WORKER_ID_ENV: str = "PY2BIN_UNIQUE_ID"

EXIT_CORRUPT_PAYLOAD: int = 70


class RunMode(enum.Enum):
    """How this process was started."""

    STANDALONE = "standalone"
    CLUSTER_WORKER = "cluster_worker"


class RuntimeAccessor(Protocol):
    """What the patched interpreter's builtin ``_py2bin_runtime`` module offers."""

    def source(self, name: str) -> bytes:
        """Return the raw embedded source of a module in the runtime's table."""

    def setup_worker(self) -> None:
        """Attach this process to its cluster parent."""


def _runtime_error(message: str, code: int) -> None:
    """Exit with a message.

    :param message: Error message.
    :param code: Process exit code.
    """

    sys.stderr.write(message)
    if message.endswith("\n") is False:
        sys.stderr.write("\n")
    raise SystemExit(code)


def resolve_mode(argv: list[str], environ: MutableMapping[str, str]) -> RunMode:
    """Decide whether this process is a cluster worker.

    :param argv: Process argument vector.
    :param environ: Process environment.
    :returns: The run mode.
    """

    worker_id: str = environ.get(WORKER_ID_ENV, "")
    if len(argv) > 1 and len(worker_id) > 0:
        return RunMode.CLUSTER_WORKER
    return RunMode.STANDALONE


def recover_payload(raw: bytes) -> Payload:
    """Decode the bytes read from the reserved source-table entry.

    :param raw: Placeholder region contents (payload plus zero fill).
    :returns: The decoded payload.
    :raises CorruptPayloadError: If the payload cannot be decoded.
    """

    return decode_payload(truncate_at_terminator(raw))


def main_filename(executable: str, app_name: str) -> str:
    """Return the file name the app runs under.

    :param executable: Path of the running executable.
    :param app_name: App name from the payload.
    :returns: ``<dir of executable>/<app_name>.py``.
    """

    return os.path.join(os.path.dirname(os.path.abspath(executable)), f"{app_name}.py")


def prepare_process(
    *,
    mode: RunMode,
    runtime: RuntimeAccessor,
    argv: list[str],
    environ: MutableMapping[str, str],
    filename: str,
) -> None:
    """Shape argv/environment for the app according to the run mode.

    :param mode: Resolved run mode.
    :param runtime: Runtime accessor module (provides ``setup_worker``).
    :param argv: Process argument vector, modified in place.
    :param environ: Process environment, modified in place.
    :param filename: Synthetic main file name.
    """

    if mode is RunMode.CLUSTER_WORKER:
        runtime.setup_worker()
        del environ[WORKER_ID_ENV]
        return

    argv.insert(1, filename)


def exec_main(source: bytes, filename: str) -> types.ModuleType:
    """Execute app source as the ``__main__`` module.

    :param source: App source bytes.
    :param filename: File name reported in tracebacks and ``__file__``.
    :returns: The executed module.
    """

    module: types.ModuleType = types.ModuleType("__main__")
    module.__file__ = filename
    sys.modules["__main__"] = module

    code = compile(source, filename, "exec")
    exec(code, module.__dict__)
    return module


def run(
    runtime: RuntimeAccessor | None = None,
    argv: list[str] | None = None,
    environ: MutableMapping[str, str] | None = None,
    executable: str | None = None,
) -> None:
    """Recover the embedded app and run it.

    :param runtime: Runtime accessor; defaults to the builtin ``_py2bin_runtime``.
    :param argv: Argument vector; defaults to ``sys.argv``.
    :param environ: Environment; defaults to ``os.environ``.
    :param executable: Executable path; defaults to ``sys.executable``.
    """

    if runtime is None:
        runtime = importlib.import_module(RUNTIME_MODULE_NAME)
    if argv is None:
        argv = sys.argv
    if environ is None:
        environ = os.environ
    if executable is None:
        executable = sys.executable

    mode: RunMode = resolve_mode(argv, environ)

    try:
        payload: Payload = recover_payload(runtime.source(APP_MODULE_NAME))
    except CorruptPayloadError as e:
        _runtime_error(f"py2bin: embedded app is corrupt ({e})\n", EXIT_CORRUPT_PAYLOAD)
        raise AssertionError("unreachable")

    filename: str = main_filename(executable, payload.name)
    prepare_process(mode=mode, runtime=runtime, argv=argv, environ=environ, filename=filename)
    exec_main(payload.source, filename)
