"""Out-of-process evaluation entry for the sandbox validator.

Run by path as ``python -I -S _sandbox_worker.py``. Reads one JSON request
from stdin::

    {"code": "...", "entrypoint": "main", "input": <json>}

executes ``code`` in a fresh namespace, calls the entrypoint with the input
and writes one JSON envelope to stdout::

    {"ok": true, "output": <json>}  or  {"ok": false, "error": "..."}

Standard library only; nothing from the host package is importable here.
"""

import contextlib
import io
import json
import os
import sys


def _evaluate(request):
    namespace = {"__name__": "__sandbox__", "__builtins__": __builtins__}
    captured = io.StringIO()
    with contextlib.redirect_stdout(captured):
        exec(compile(request["code"], "<candidate>", "exec"), namespace)
        entrypoint = namespace.get(request.get("entrypoint") or "main")
        if not callable(entrypoint):
            raise LookupError(f"entrypoint {request.get('entrypoint')!r} is not defined")
        result = entrypoint(request.get("input"))
    # Round-trip so non-serialisable results fail here, not in the host.
    return json.loads(json.dumps(result))


def main():
    stdout = sys.stdout
    try:
        request = json.loads(sys.stdin.read())
        envelope = {"ok": True, "output": _evaluate(request)}
    except BaseException as exc:  # noqa: BLE001 - SystemExit from candidate code included
        envelope = {"ok": False, "error": f"{type(exc).__name__}: {exc}"}
    stdout.write(json.dumps(envelope))
    stdout.flush()
    # Threads the candidate left running must not hold the process open.
    os._exit(0)


if __name__ == "__main__":
    main()
