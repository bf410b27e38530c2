"""Child-process entry point for running generated transformation code.

Started by the sandbox executors as ``python -I runner.py [payload.json]``,
so only the standard library is importable here. Reads
``{"code", "rows", "limits"}`` as JSON from the payload file (or stdin) and
prints exactly one result line prefixed with RESULT_MARKER.

Before the generated code runs, an audit hook is installed that refuses file
access outside the standard library, sockets, process control and imports of
modules that are not already loaded or whitelisted. Audit hooks cannot be
removed from Python code, so the hook still holds when the code reaches the
unrestricted builtins of an imported module.
"""

import builtins
import contextlib
import io
import json
import os
import sys
import time

import resource

RESULT_MARKER = "__REFINERY_RESULT__"
ROW_ERROR_KEY = "_error"
PREVIEW_ROWS = 5
RESULTS_PREVIEW_ROWS = 10
MAX_LOG_CHARS = 4000

ALLOWED_MODULES = frozenset(
    {
        "collections",
        "copy",
        "datetime",
        "decimal",
        "functools",
        "hashlib",
        "itertools",
        "json",
        "math",
        "re",
        "statistics",
        "string",
        "unicodedata",
    }
)

# Loaded before the audit hook goes in; they import lazily otherwise
PRELOADED_MODULES = (
    "_strptime",
    "encodings.ascii",
    "encodings.cp1252",
    "encodings.latin_1",
    "encodings.utf_16",
    "encodings.utf_32",
)

BLOCKED_BUILTINS = frozenset(
    {
        "open",
        "eval",
        "exec",
        "compile",
        "input",
        "breakpoint",
        "help",
        "exit",
        "quit",
    }
)

BLOCKED_EVENT_PREFIXES = (
    "builtins.input",
    "compile",
    "ctypes.",
    "fcntl.",
    "ftplib.",
    "gc.",
    "glob.",
    "http.",
    "marshal.",
    "object.__getattr__",
    "mmap.",
    "os.",
    "pickle.",
    "pty.",
    "resource.",
    "shutil.",
    "signal.",
    "smtplib.",
    "socket.",
    "sqlite3.",
    "subprocess.",
    "sys._current_frames",
    "sys._getframe",
    "sys.setprofile",
    "sys.settrace",
    "tempfile.",
    "urllib.",
    "webbrowser.",
)

STDLIB_DIR = os.path.dirname(os.__file__) + os.sep


def apply_limits(limits):
    memory_bytes = int(limits.get("memory_limit_mb", 512)) * 1024 * 1024
    cpu_seconds = int(limits.get("cpu_seconds", 60))
    file_bytes = int(limits.get("max_file_bytes", 1024 * 1024))

    for name, value in (
        ("RLIMIT_AS", memory_bytes),
        ("RLIMIT_CPU", cpu_seconds),
        ("RLIMIT_FSIZE", file_bytes),
        ("RLIMIT_NPROC", 0),
    ):
        limit = getattr(resource, name, None)
        if limit is None:
            continue
        try:
            resource.setrlimit(limit, (value, value))
        except (ValueError, OSError):
            # Some platforms refuse to lower particular limits
            pass


def make_audit_hook(allowed_code):
    """Build an audit hook that admits only pure computation.

    ``allowed_code`` is the one code object that may be executed; every
    other ``exec`` or ``compile`` is refused. Generated code can rebind
    module globals and builtins, so the hook body touches nothing but the
    locals captured here and methods of str.
    """
    allowed_modules = ALLOWED_MODULES
    blocked_prefixes = BLOCKED_EVENT_PREFIXES
    stdlib_dir = STDLIB_DIR
    str_type = str
    type_of = type

    def audit(event, args):
        if event == "exec":
            if args[0] is allowed_code:
                return
            raise PermissionError("Executing dynamic code is not allowed in the sandbox")

        if event == "open":
            path, mode = args[0], args[1]
            if (
                type_of(path) is str_type
                and type_of(mode) is str_type
                and path.startswith(stdlib_dir)
                and "/.." not in path
                and "w" not in mode
                and "a" not in mode
                and "x" not in mode
                and "+" not in mode
            ):
                return
            raise PermissionError("File access is not allowed in the sandbox")

        if event == "import":
            name = args[0]
            if name.partition(".")[0] in allowed_modules or name.startswith("encodings."):
                return
            raise ImportError(f"Import of '{name}' is not allowed in the sandbox")

        if event.startswith(blocked_prefixes):
            raise PermissionError(f"Operation '{event}' is not allowed in the sandbox")

    return audit


def _guarded_import(name, globals=None, locals=None, fromlist=(), level=0):
    if level != 0 or name.split(".")[0] not in ALLOWED_MODULES:
        raise ImportError(f"Import of '{name}' is not allowed in the sandbox")
    return builtins.__import__(name, globals, locals, fromlist, level)


def restricted_builtins():
    allowed = {
        name: value
        for name, value in vars(builtins).items()
        if name not in BLOCKED_BUILTINS and name != "__import__"
    }
    allowed["__import__"] = _guarded_import
    return allowed


def preload_modules():
    for name in sorted(ALLOWED_MODULES) + list(PRELOADED_MODULES):
        __import__(name)


def split_row_errors(rows):
    """Strip ROW_ERROR_KEY from rows and count the rows that carried one."""
    errors = 0
    cleaned = []
    for row in rows:
        if ROW_ERROR_KEY in row:
            row = dict(row)
            if row.pop(ROW_ERROR_KEY):
                errors += 1
        cleaned.append(row)
    return cleaned, errors


def compute_stats(before, after, errors=0):
    paired = min(len(before), len(after))
    transformed = sum(1 for i in range(paired) if before[i] != after[i])
    return {
        "total": len(before),
        "transformed": transformed,
        "unchanged": paired - transformed,
        "errors": errors,
        "added": max(0, len(after) - len(before)),
        "removed": max(0, len(before) - len(after)),
    }


def run_transform(code, rows):
    compiled = compile(code, "<transform>", "exec")
    namespace = {"__builtins__": restricted_builtins(), "__name__": "transform_module"}

    # The transform gets its own copy so the before-sample stays intact
    data = json.loads(json.dumps(rows))

    sys.addaudithook(make_audit_hook(compiled))
    exec(compiled, namespace)

    transform = namespace.get("transform")
    if not callable(transform):
        raise ValueError("Generated code does not define a transform(data) function")

    result = transform(data)

    if isinstance(result, dict) and "results" in result:
        result = result["results"]
    if not isinstance(result, list):
        raise TypeError(
            f"transform(data) must return a list of rows, got {type(result).__name__}"
        )
    bad = [i for i, row in enumerate(result) if not isinstance(row, dict)]
    if bad:
        raise TypeError(
            f"transform(data) must return dict rows; row {bad[0]} is "
            f"{type(result[bad[0]]).__name__}"
        )
    return result


def read_payload(argv):
    if len(argv) > 1:
        with open(argv[1], "rb") as f:
            return json.loads(f.read().decode("utf-8"))
    return json.loads(sys.stdin.buffer.read().decode("utf-8"))


def main(argv=None):
    payload = read_payload(argv or sys.argv)
    code = payload["code"]
    rows = payload.get("rows") or []
    apply_limits(payload.get("limits") or {})
    preload_modules()

    captured = io.StringIO()
    started = time.perf_counter()
    try:
        with contextlib.redirect_stdout(captured):
            after = run_transform(code, rows)
        after, errors = split_row_errors(after)
        report = {
            "success": True,
            "output": {
                "sample_before": rows[:PREVIEW_ROWS],
                "sample_after": after[:PREVIEW_ROWS],
                "results": after[:RESULTS_PREVIEW_ROWS],
                "stats": compute_stats(rows, after, errors),
            },
            "rows": after,
        }
    except BaseException as e:
        report = {
            "success": False,
            "error": f"{type(e).__name__}: {e}",
        }

    report["duration_ms"] = int((time.perf_counter() - started) * 1000)
    report["logs"] = captured.getvalue()[-MAX_LOG_CHARS:]

    line = RESULT_MARKER + json.dumps(report, default=str)
    sys.stdout.buffer.write(line.encode("utf-8") + b"\n")
    sys.stdout.flush()
    return 0 if report["success"] else 1


if __name__ == "__main__":
    sys.exit(main())
