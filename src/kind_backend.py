#!/usr/bin/env python3
# src/kind_backend.py
"""
Handle to the local KIND installation.

Every operation shells out to the kind CLI. Calls block until the command
exits; each accepts a threading.Event that kills the command when set.
"""

import logging
import os
import subprocess
import threading
from typing import List, Optional

logger = logging.getLogger("provider-kind.backend")

KIND_BINARY = os.environ.get("KIND_BINARY", "kind")
KIND_COMMAND_POLL = float(os.environ.get("KIND_COMMAND_POLL", "0.5"))


class BackendError(Exception):
    """A kind command failed."""


class BackendCancelledError(BackendError):
    """A kind command was cancelled before it completed."""


class KindProvider:
    """Lists, creates and deletes KIND clusters through the kind CLI."""

    def __init__(self, binary: str = "", poll_interval: float = 0.0):
        self.binary = binary or KIND_BINARY
        self.poll_interval = poll_interval or KIND_COMMAND_POLL

    def list(self, cancel: Optional[threading.Event] = None) -> List[str]:
        """Return the names of all local KIND clusters."""
        return self._lines(self._run(["get", "clusters"], cancel=cancel))

    def create(
        self,
        name: str,
        config: str,
        wait: Optional[str] = None,
        kubeconfig_path: str = os.devnull,
        cancel: Optional[threading.Event] = None,
    ):
        """Create a cluster from a rendered v1alpha4 config passed on stdin."""
        args = [
            "create",
            "cluster",
            "--name",
            name,
            "--config",
            "-",
            "--kubeconfig",
            kubeconfig_path,
        ]
        if wait:
            args.extend(["--wait", wait])
        self._run(args, input_data=config, cancel=cancel)

    def delete(
        self,
        name: str,
        kubeconfig_path: str = os.devnull,
        cancel: Optional[threading.Event] = None,
    ):
        self._run(
            ["delete", "cluster", "--name", name, "--kubeconfig", kubeconfig_path],
            cancel=cancel,
        )

    def kubeconfig(
        self, name: str, internal: bool = False, cancel: Optional[threading.Event] = None
    ) -> str:
        """Return the kubeconfig exactly as kind prints it."""
        args = ["get", "kubeconfig", "--name", name]
        if internal:
            args.append("--internal")
        return self._run(args, cancel=cancel)

    def list_nodes(self, name: str, cancel: Optional[threading.Event] = None) -> List[str]:
        """Return the container names of a cluster's nodes."""
        return self._lines(self._run(["get", "nodes", "--name", name], cancel=cancel))

    @staticmethod
    def _lines(output: str) -> List[str]:
        return [line.strip() for line in output.splitlines() if line.strip()]

    def _run(
        self,
        args: List[str],
        input_data: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        command = [self.binary, *args]
        logger.debug(f"Running {' '.join(command)}")

        try:
            proc = subprocess.Popen(
                command,
                stdin=subprocess.PIPE if input_data is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as e:
            raise BackendError(f"cannot run {self.binary}: {e}") from e

        pending_input = input_data
        while True:
            if cancel is not None and cancel.is_set():
                proc.kill()
                proc.communicate()
                raise BackendCancelledError(f"{' '.join(args[:2])} cancelled")
            try:
                stdout, stderr = proc.communicate(
                    input=pending_input, timeout=self.poll_interval
                )
                break
            except subprocess.TimeoutExpired:
                # communicate() keeps the input it already sent.
                pending_input = None

        if proc.returncode != 0:
            raise BackendError(stderr.strip() or f"kind {' '.join(args[:2])} failed")
        return stdout
