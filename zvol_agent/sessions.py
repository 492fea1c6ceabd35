"""
Local initiator session management.

Runs iscsiadm / nvme-cli on the host to discover, log in to (or connect to)
and tear down the sessions that make exported volumes visible as local
block devices.
"""

import logging
import re
import subprocess
from typing import List, Optional, Tuple

from zvol_agent.config import StorageConfig, settings
from zvol_agent.models.events import SessionResult

logger = logging.getLogger(__name__)

DEFAULT_ISCSI_PORT = 3260
DEFAULT_NVME_PORT = 4420

# tcp: [1] 10.0.0.5:3260,1 iqn.2005-10.org.freenas.ctl:proxmox (non-flash)
_SESSION_LINE_RE = re.compile(r"^\S+:\s+\[(\d+)\]\s+(\S+?)(?:,\d+)?\s+(\S+)")
# 10.0.0.5:3260,1 iqn.2005-10.org.freenas.ctl:proxmox
_DISCOVERY_LINE_RE = re.compile(r"^(\S+?)(?:,\d+)?\s+(\S+)$")
_NVME_SUBNQN_RE = re.compile(r"^subnqn:\s+(\S+)")


def normalize_portal(portal: str) -> str:
    """Strip whitespace, IPv6 brackets and a trailing ``,TPGT`` for comparisons."""
    portal = portal.strip()
    portal = re.sub(r",\d+$", "", portal)
    return portal.replace("[", "").replace("]", "")


def parse_portal(portal: str, default_port: int) -> Tuple[str, int]:
    """
    Split a portal into (host, port).

    Accepts ``host``, ``host:port``, ``[v6]``, ``[v6]:port`` and bare IPv6
    addresses (which never carry a port).
    """
    portal = re.sub(r",\d+$", "", portal.strip())
    match = re.match(r"^\[([^\]]+)\](?::(\d+))?$", portal)
    if match:
        return match.group(1), int(match.group(2)) if match.group(2) else default_port
    if portal.count(":") > 1:
        return portal, default_port
    if ":" in portal:
        host, port = portal.rsplit(":", 1)
        return host, int(port)
    return portal, default_port


def format_portal(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class SessionRunner:
    """Executes initiator commands."""

    def __init__(self, timeout: Optional[int] = None):
        self.timeout = timeout or settings.session_command_timeout

    def run(self, cmd: List[str]) -> Tuple[int, str, str]:
        """Execute a command and return (exit_code, stdout, stderr)."""
        logger.debug(f"Running command: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
            return result.returncode, result.stdout, result.stderr
        except subprocess.TimeoutExpired:
            logger.error(f"Command timed out: {cmd[0]} {cmd[1] if len(cmd) > 1 else ''}")
            return -1, "", "Command timed out"
        except OSError as e:
            logger.error(f"Command error: {e}")
            return -1, "", str(e)


class IscsiSessionManager:
    """Discovery + login against the configured target IQN."""

    def __init__(self, config: StorageConfig, runner: Optional[SessionRunner] = None):
        self.config = config
        self.runner = runner or SessionRunner()
        self.iscsiadm = settings.iscsiadm_binary

    @property
    def portals(self) -> List[str]:
        if not self.config.use_multipath:
            return [self.config.discovery_portal]
        return list(self.config.all_portals)

    def _portal(self, portal: str) -> str:
        host, port = parse_portal(portal, DEFAULT_ISCSI_PORT)
        return format_portal(host, port)

    def discover(self, portal: str) -> List[Tuple[str, str]]:
        """sendtargets discovery; returns (portal, iqn) pairs."""
        cmd = [self.iscsiadm, "-m", "discovery", "-t", "sendtargets", "-p", self._portal(portal)]
        code, stdout, stderr = self.runner.run(cmd)
        if code != 0:
            logger.warning(f"iSCSI discovery failed on {portal}: {stderr.strip()}")
            return []
        found = []
        for line in stdout.splitlines():
            match = _DISCOVERY_LINE_RE.match(line.strip())
            if match:
                found.append((match.group(1), match.group(2)))
        return found

    def _node_update(self, portal: str, name: str, value: str) -> Tuple[int, str, str]:
        return self.runner.run([
            self.iscsiadm, "-m", "node", "-T", self.config.target_iqn, "-p", portal,
            "-o", "update", "-n", name, "-v", value,
        ])

    def establish(self) -> SessionResult:
        """Log in on every configured portal. Succeeds if at least one portal has a session."""
        iqn = self.config.target_iqn
        errors = []
        connected = 0

        for raw in self.portals:
            portal = self._portal(raw)
            if self._portal_connected(portal):
                connected += 1
                continue
            self.discover(raw)
            self._node_update(portal, "node.startup", "automatic")
            if self.config.chap_user and self.config.chap_password:
                for name, value in (
                    ("node.session.auth.authmethod", "CHAP"),
                    ("node.session.auth.username", self.config.chap_user),
                    ("node.session.auth.password", self.config.chap_password),
                ):
                    code, _, stderr = self._node_update(portal, name, value)
                    if code != 0:
                        logger.warning(f"iscsiadm CHAP update failed on {portal}: {stderr.strip()}")

            code, _, stderr = self.runner.run([self.iscsiadm, "-m", "node", "-T", iqn, "-p", portal, "--login"])
            if code == 0 or "already present" in stderr:
                connected += 1
                logger.info(f"iSCSI session established to {iqn} via {portal}")
            else:
                errors.append(f"{portal}: {stderr.strip() or f'exit {code}'}")

        if connected:
            return SessionResult(success=True, descriptor=iqn, error="; ".join(errors) or None)
        return SessionResult(success=False, error="; ".join(errors) or "no portals configured")

    def teardown(self) -> SessionResult:
        iqn = self.config.target_iqn
        errors = []
        for raw in self.portals:
            portal = self._portal(raw)
            code, _, stderr = self.runner.run([self.iscsiadm, "-m", "node", "-T", iqn, "-p", portal, "--logout"])
            if code != 0 and "No matching sessions" not in stderr:
                errors.append(f"{portal}: {stderr.strip() or f'exit {code}'}")
        if errors:
            return SessionResult(success=False, descriptor=iqn, error="; ".join(errors))
        return SessionResult(success=True, descriptor=iqn)

    def list_sessions(self) -> List[dict]:
        code, stdout, stderr = self.runner.run([self.iscsiadm, "-m", "session"])
        if code != 0:
            # iscsiadm exits 21 when there are no sessions
            return []
        sessions = []
        for line in stdout.splitlines():
            match = _SESSION_LINE_RE.match(line.strip())
            if match:
                sessions.append({
                    "sid": int(match.group(1)),
                    "portal": match.group(2),
                    "target": match.group(3),
                })
        return sessions

    def _portal_connected(self, portal: str) -> bool:
        wanted = normalize_portal(portal)
        return any(
            s["target"] == self.config.target_iqn and normalize_portal(s["portal"]) == wanted
            for s in self.list_sessions()
        )

    def is_connected(self) -> bool:
        return any(s["target"] == self.config.target_iqn for s in self.list_sessions())

    def rescan(self) -> SessionResult:
        code, _, stderr = self.runner.run([self.iscsiadm, "-m", "session", "-R"])
        if code != 0:
            return SessionResult(success=False, error=stderr.strip() or f"exit {code}")
        return SessionResult(success=True, descriptor=self.config.target_iqn)


class NvmeSessionManager:
    """Discovery + connect against the configured subsystem NQN."""

    def __init__(self, config: StorageConfig, runner: Optional[SessionRunner] = None):
        self.config = config
        self.runner = runner or SessionRunner()
        self.nvme = settings.nvme_binary

    @property
    def portals(self) -> List[str]:
        if not self.config.use_multipath:
            return [self.config.discovery_portal]
        return list(self.config.all_portals)

    def discover(self, portal: str) -> List[str]:
        host, port = parse_portal(portal, DEFAULT_NVME_PORT)
        code, stdout, stderr = self.runner.run([self.nvme, "discover", "-t", "tcp", "-a", host, "-s", str(port)])
        if code != 0:
            logger.warning(f"NVMe discovery failed on {portal}: {stderr.strip()}")
            return []
        found = []
        for line in stdout.splitlines():
            match = _NVME_SUBNQN_RE.match(line.strip())
            if match:
                found.append(match.group(1))
        return found

    def connect_command(self, portal: str) -> List[str]:
        host, port = parse_portal(portal, DEFAULT_NVME_PORT)
        cmd = [self.nvme, "connect", "-t", "tcp", "-n", self.config.subsystem_nqn, "-a", host, "-s", str(port)]
        if self.config.hostnqn:
            cmd += ["--hostnqn", self.config.hostnqn]
        if self.config.nvme_dhchap_secret:
            cmd += ["--dhchap-secret", self.config.nvme_dhchap_secret]
        if self.config.nvme_dhchap_ctrl_secret:
            cmd += ["--dhchap-ctrl-secret", self.config.nvme_dhchap_ctrl_secret]
        return cmd

    def establish(self) -> SessionResult:
        nqn = self.config.subsystem_nqn
        if self.is_connected():
            return SessionResult(success=True, descriptor=nqn)

        errors = []
        connected = 0
        for portal in self.portals:
            code, _, stderr = self.runner.run(self.connect_command(portal))
            if code == 0 or "already connected" in stderr:
                connected += 1
                logger.info(f"NVMe/TCP connected to {nqn} via {portal}")
            else:
                errors.append(f"{portal}: {stderr.strip() or f'exit {code}'}")

        if connected:
            return SessionResult(success=True, descriptor=nqn, error="; ".join(errors) or None)
        return SessionResult(success=False, error="; ".join(errors) or "no portals configured")

    def teardown(self) -> SessionResult:
        nqn = self.config.subsystem_nqn
        code, _, stderr = self.runner.run([self.nvme, "disconnect", "-n", nqn])
        if code != 0:
            return SessionResult(success=False, descriptor=nqn, error=stderr.strip() or f"exit {code}")
        return SessionResult(success=True, descriptor=nqn)

    def list_sessions(self) -> List[dict]:
        """Controllers per subsystem from ``nvme list-subsys`` text output."""
        code, stdout, _ = self.runner.run([self.nvme, "list-subsys"])
        if code != 0:
            return []
        sessions = []
        current = None
        for line in stdout.splitlines():
            line = line.strip()
            nqn_match = re.search(r"NQN=(\S+)", line)
            if nqn_match:
                current = nqn_match.group(1)
                continue
            ctrl_match = re.match(r"^[+`\\|\- ]*(nvme\d+)\s+(\w+)\s+(.*?)\s*(\w+)?$", line)
            if current and ctrl_match:
                sessions.append({
                    "controller": ctrl_match.group(1),
                    "transport": ctrl_match.group(2),
                    "address": ctrl_match.group(3),
                    "state": ctrl_match.group(4),
                    "target": current,
                })
        return sessions

    def is_connected(self) -> bool:
        code, stdout, _ = self.runner.run([self.nvme, "list-subsys"])
        return code == 0 and self.config.subsystem_nqn in stdout

    def rescan(self) -> SessionResult:
        errors = []
        for session in self.list_sessions():
            if session["target"] != self.config.subsystem_nqn:
                continue
            code, _, stderr = self.runner.run([self.nvme, "ns-rescan", f"/dev/{session['controller']}"])
            if code != 0:
                errors.append(f"{session['controller']}: {stderr.strip()}")
        if errors:
            return SessionResult(success=False, error="; ".join(errors))
        return SessionResult(success=True, descriptor=self.config.subsystem_nqn)
