# app/automata/scripts.py
from __future__ import annotations

import logging
import os
import subprocess
import threading
from pathlib import Path
from typing import Optional

from .types import ScriptError

log = logging.getLogger("automata")


def run_script(command: str, scripts_dir: str, timeout: Optional[float] = None) -> str:
    """
    Запустить скрипт из каталога скриптов и вернуть объединённый stdout+stderr.

    command = "имя арг1 арг2"; из имени берётся только basename,
    чтобы нельзя было выйти за пределы scripts_dir.
    """
    args = command.split()
    name = os.path.basename(args[0]) if args else ""
    if not name:
        raise ScriptError("Expected a script name argument")

    path = Path(scripts_dir).expanduser() / name
    log.info("Running script: %s", path)
    try:
        proc = subprocess.run(
            [str(path), *args[1:]],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        out = (e.output or b"").decode("utf-8", errors="replace")
        raise ScriptError(f"timed out after {timeout}s", out) from None
    except OSError as e:
        raise ScriptError(f"{path}: {e.strerror or e}") from None

    output = proc.stdout.decode("utf-8", errors="replace")
    if proc.returncode != 0:
        raise ScriptError(f"exit status {proc.returncode}", output)
    return output


def run_script_async(command: str, scripts_dir: str) -> threading.Thread:
    """Неблокирующий запуск: результат только пишется в лог."""

    def _run() -> None:
        try:
            output = run_script(command, scripts_dir)
        except ScriptError as e:
            log.error("Script '%s' failed: %s %s", command, e, e.output.strip())
            return
        log.info("Script '%s' successful: %s", command, output.strip())

    t = threading.Thread(target=_run, name=f"script:{command}", daemon=True)
    t.start()
    return t
