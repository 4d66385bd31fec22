from __future__ import annotations

import importlib
import os
import platform
import sys


def _try_import(modname: str):
    try:
        return importlib.import_module(modname), None
    except Exception as e:  # pragma: no cover
        return None, e


def main() -> None:
    print("cthyb_trace environment check")
    print(f"- python: {sys.version.split()[0]}")
    print(f"- platform: {platform.platform()}")

    for name in ("numpy", "scipy"):
        mod, err = _try_import(name)
        if err is None:
            print(f"- {name}: {getattr(mod, '__version__', 'unknown')}")
        else:
            print(f"- {name}: MISSING ({type(err).__name__}: {err})")
            print("  hint: reinstall with `python -m pip install -e .`")

    nb, nb_err = _try_import("numba")
    if nb_err is None:
        print(f"- numba: {getattr(nb, '__version__', 'unknown')}")
    else:
        print(f"- numba: MISSING ({type(nb_err).__name__}: {nb_err})")
        print("  hint: install with `python -m pip install -e '.[numba]'` for the compiled bound pass")

    from cthyb_trace.bounds import _bound_backend  # noqa: PLC0415

    env = os.environ.get("CTHYB_TRACE_BOUND_BACKEND", "")
    try:
        backend = _bound_backend()
    except ValueError as e:
        backend = f"INVALID ({e})"
    print(f"- bound backend: {backend} (CTHYB_TRACE_BOUND_BACKEND={env or 'unset'})")


if __name__ == "__main__":  # pragma: no cover
    main()
