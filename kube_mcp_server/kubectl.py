from __future__ import annotations
import asyncio
import os
import shutil
from typing import Dict, List, Optional

from .errors import KubectlError

import logging
log = logging.getLogger(__name__)


def kubectl_binary() -> str:
    kubectl = shutil.which("kubectl")
    if not kubectl:
        raise KubectlError(["kubectl"], 127, "kubectl not found in PATH")
    return kubectl


def kubectl_env(kubeconfig: Optional[str]) -> Dict[str, str]:
    env = dict(os.environ)
    if kubeconfig:
        env["KUBECONFIG"] = kubeconfig
    return env


class KubectlRunner:
    """Run short-lived kubectl commands against one kubeconfig."""

    def __init__(self, kubeconfig: Optional[str], timeout: float = 30.0, binary: Optional[str] = None):
        self.kubeconfig = kubeconfig
        self.timeout = timeout
        self._binary = binary

    @property
    def binary(self) -> str:
        if self._binary is None:
            self._binary = kubectl_binary()
        return self._binary

    async def __call__(self, args: List[str]) -> str:
        cmd = [self.binary, *args]
        log.debug("kubectl %s", " ".join(args))
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=kubectl_env(self.kubeconfig),
        )
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise KubectlError(cmd, None, f"timeout after {self.timeout}s")
        if proc.returncode != 0:
            raise KubectlError(cmd, proc.returncode, err.decode("utf-8", "replace"))
        return out.decode("utf-8", "replace")
