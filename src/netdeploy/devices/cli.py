"""CLI-oriented transport over SSH (paramiko).

Works with IOS-like devices that accept a full configuration through an
interactive shell:

    configure replace terminal (or "configure terminal")
    <lines>
    end
    write memory

Commands can be overridden per device in ``options``:
    show_config, configure, commit, show_interface, show_bgp_neighbor
"""
import asyncio
import logging
import re
import socket
import time
from typing import Optional

import paramiko

from ..errors import ApplyError, TransportError
from ..utils.connection import with_retry
from ..utils.logging_config import timed
from .base import ApplyResult, Assertion, DeviceConfig

logger = logging.getLogger(__name__)

PROMPT_PATTERN = re.compile(r"[\w\-.()]+[#>]\s*$")
MORE_PATTERN = re.compile(r"--More--|<--- More --->")

# Error patterns that indicate the device rejected a line (must appear at line start)
ERROR_PATTERNS = [
    re.compile(r"^%\s*Invalid", re.M),
    re.compile(r"^%\s*Incomplete command", re.M),
    re.compile(r"^%\s*Ambiguous command", re.M),
    re.compile(r"^%\s*Error", re.M),
    re.compile(r"^Error[:\s]", re.M),
]

INTERFACE_UP = re.compile(r"line protocol is up|is up,|oper(ational)?[- ]status:?\s*up", re.I)
BGP_ESTABLISHED = re.compile(r"BGP state\s*=\s*Established|state:?\s*established", re.I)

DEFAULT_COMMANDS = {
    "show_config": "show running-config",
    "configure": "configure terminal",
    "end": "end",
    "commit": "write memory",
    "show_interface": "show interfaces {target}",
    "show_bgp_neighbor": "show bgp neighbors {target}",
}

NETWORK_ERRORS = (
    paramiko.SSHException,
    socket.error,
    EOFError,
    TimeoutError,
)


class CliTransport:
    """SSH CLI transport. Opens one session per call."""

    family = "cli"

    def __init__(self, read_idle: float = 1.0):
        self.read_idle = read_idle

    def _command(self, device: DeviceConfig, name: str, **kwargs: str) -> str:
        template = device.options.get(name, DEFAULT_COMMANDS[name])
        return template.format(**kwargs)

    @with_retry(max_attempts=2, min_wait=1, max_wait=5)
    async def _connect(self, device: DeviceConfig) -> paramiko.SSHClient:
        """Open an SSH client; vendor errors become TransportError."""
        loop = asyncio.get_running_loop()

        def _open():
            ssh = paramiko.SSHClient()
            ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            ssh.connect(
                hostname=device.host,
                port=device.port,
                username=device.username,
                password=device.get_password(),
                timeout=device.timeout,
                allow_agent=False,
                look_for_keys=False,
            )
            return ssh

        try:
            return await loop.run_in_executor(None, _open)
        except paramiko.AuthenticationException as e:
            raise TransportError(f"Authentication failed for {device.device_id}: {e}", device_id=device.device_id)
        except NETWORK_ERRORS as e:
            raise TransportError(f"SSH connect to {device.device_id} failed: {e}", device_id=device.device_id)

    async def _exec(self, device: DeviceConfig, command: str) -> str:
        ssh = await self._connect(device)
        loop = asyncio.get_running_loop()

        def _run():
            stdin, stdout, stderr = ssh.exec_command(command, timeout=device.timeout)
            out = stdout.read().decode("utf-8", errors="ignore")
            return out

        try:
            return await loop.run_in_executor(None, _run)
        except NETWORK_ERRORS as e:
            raise TransportError(f"'{command}' on {device.device_id} failed: {e}", device_id=device.device_id)
        finally:
            ssh.close()

    async def _shell(self, device: DeviceConfig, lines: list[str]) -> str:
        """Feed lines to an interactive shell and collect the transcript."""
        ssh = await self._connect(device)
        loop = asyncio.get_running_loop()
        idle = self.read_idle

        def _run():
            shell = ssh.invoke_shell()
            shell.settimeout(device.timeout)
            output = ""
            for line in lines:
                shell.send(f"{line}\n".encode())
                output += _drain(shell, idle)
            return output

        try:
            return await loop.run_in_executor(None, _run)
        except NETWORK_ERRORS as e:
            raise TransportError(f"Shell session on {device.device_id} failed: {e}", device_id=device.device_id)
        finally:
            ssh.close()

    @timed("read_config")
    async def read_config(self, device: DeviceConfig) -> str:
        output = await self._exec(device, self._command(device, "show_config"))
        return _strip_ansi(output)

    @timed("apply")
    async def apply(self, device: DeviceConfig, text: str) -> ApplyResult:
        body = [line for line in text.splitlines() if line.strip() and not line.lstrip().startswith("!")]
        lines = [self._command(device, "configure"), *body, self._command(device, "end")]
        if self._command(device, "commit"):
            lines.append(self._command(device, "commit"))

        output = _strip_ansi(await self._shell(device, lines))

        error = _find_error(output)
        if error:
            raise ApplyError(
                f"{device.device_id} rejected configuration: {error}",
                device_id=device.device_id,
                output=output[-2000:],
            )
        return ApplyResult(success=True, output=output[-2000:])

    @timed("check_assertions")
    async def check_assertions(self, device: DeviceConfig, assertions: list[Assertion]) -> bool:
        for assertion in assertions:
            if assertion.kind == "interface_up":
                output = await self._exec(device, self._command(device, "show_interface", target=assertion.target))
                if not INTERFACE_UP.search(output):
                    logger.debug(f"{device.device_id}: {assertion.describe()} not yet true")
                    return False
            elif assertion.kind == "bgp_established":
                output = await self._exec(device, self._command(device, "show_bgp_neighbor", target=assertion.target))
                if not BGP_ESTABLISHED.search(output):
                    logger.debug(f"{device.device_id}: {assertion.describe()} not yet true")
                    return False
            else:
                logger.warning(f"Unsupported assertion kind for CLI transport: {assertion.kind}")
                return False
        return True


def _drain(shell: paramiko.Channel, idle: float) -> str:
    """Read from the shell until a prompt shows up or it goes quiet."""
    output = ""
    last_data = time.monotonic()
    while time.monotonic() - last_data < idle:
        if shell.recv_ready():
            chunk = shell.recv(65535).decode("utf-8", errors="ignore")
            output += chunk
            last_data = time.monotonic()
            if MORE_PATTERN.search(chunk):
                shell.send(b" ")
            elif PROMPT_PATTERN.search(output):
                break
        else:
            time.sleep(0.05)
    return output


def _strip_ansi(text: str) -> str:
    text = re.sub(r"\x1b\[[0-9;]*[a-zA-Z]", "", text)
    text = re.sub(r"\x1b\[\??\d+[hl]", "", text)
    return MORE_PATTERN.sub("", text).replace("\r", "")


def _find_error(output: str) -> Optional[str]:
    for pattern in ERROR_PATTERNS:
        match = pattern.search(output)
        if match:
            end = output.find("\n", match.start())
            return output[match.start():end if end != -1 else None].strip()
    return None
