"""Kernel sources and the process-wide compiled kernel cache.

A source unit is either an inline source string or a file under the
configured kernel root. Both resolve to source text and are compiled the
same way; only the cache key differs (md5 of the text for inline sources,
the relative path for files). Programs are built once per
(backend namespace, source key) and kernels extracted once per
(backend namespace, source key, entry).
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any

from gpu_runtime.backend import Backend
from gpu_runtime.errors import CompilationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KernelSource:
    """Identity of one compilable unit of kernel source."""
    key: str
    text: str | None = field(default=None, repr=False, compare=False)
    path: str | None = None

    @staticmethod
    def inline(text: str) -> KernelSource:
        digest = hashlib.md5(text.encode()).hexdigest()
        return KernelSource(key=f"inline:{digest}", text=text)

    @staticmethod
    def file(relpath: str) -> KernelSource:
        return KernelSource(key=f"file:{relpath}", path=relpath)

    def load(self, kernel_root: str) -> str:
        """Resolve to source text. File paths are relative to ``kernel_root``."""
        if self.text is not None:
            return self.text
        full_path = os.path.join(kernel_root, self.path)
        try:
            with open(full_path, encoding="utf-8") as f:
                return f.read()
        except OSError as e:
            raise CompilationError(
                f"Kernel source not readable: {full_path}",
                log=str(e), source=self.key,
            ) from e


@dataclass
class Kernel:
    """A compiled entry point together with the program it came from."""
    source: KernelSource
    entry: str
    program: Any
    handle: Any


class KernelCache:
    """Compiled programs and kernels, keyed by source identity and entry name.

    There is no invalidation path: an entry, once compiled, lives until
    clear() is called at teardown.
    """

    def __init__(self):
        self._programs: dict[tuple[str, str], Any] = {}
        self._kernels: dict[tuple[str, str, str], Kernel] = {}
        self._lock = threading.Lock()
        self.program_builds = 0
        self.kernel_builds = 0

    def get(self, backend: Backend, source: KernelSource, entry: str, kernel_root: str) -> Kernel:
        kernel_key = (backend.name, source.key, entry)
        with self._lock:
            cached = self._kernels.get(kernel_key)
            if cached is not None:
                return cached

            program_key = (backend.name, source.key)
            program = self._programs.get(program_key)
            if program is None:
                text = source.load(kernel_root)
                logger.debug("Compiling program %s on %s", source.key, backend.name)
                program = backend.compile_program(text, source.key)
                self._programs[program_key] = program
                self.program_builds += 1

            handle = backend.get_kernel(program, entry)
            kernel = Kernel(
                source=source,
                entry=entry,
                program=program,
                handle=handle,
            )
            self._kernels[kernel_key] = kernel
            self.kernel_builds += 1
            logger.debug("Built kernel %s from %s", entry, source.key)
            return kernel

    def __contains__(self, key: tuple[str, str, str]) -> bool:
        return key in self._kernels

    def __len__(self) -> int:
        return len(self._kernels)

    def stats(self) -> dict[str, int]:
        return {
            "programs": len(self._programs),
            "kernels": len(self._kernels),
            "program_builds": self.program_builds,
            "kernel_builds": self.kernel_builds,
        }

    def clear(self) -> None:
        with self._lock:
            self._programs.clear()
            self._kernels.clear()


# Shared by every DeviceContext unless one is given its own cache.
KERNEL_CACHE = KernelCache()
