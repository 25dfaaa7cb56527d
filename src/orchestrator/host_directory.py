"""
Host directory - load the fleet from a YAML file.
"""
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from orchestrator.connection_manager import CredentialError
from orchestrator.models import Host, HostsFile
from orchestrator.security_utils import SecurityError, validate_key_path

logger = logging.getLogger(__name__)


class HostDirectoryError(Exception):
    """Error while loading the host directory."""
    pass


def load_hosts_file(file_path: Path) -> List[Host]:
    """
    Load and validate the hosts YAML file.

    Args:
        file_path: Path to YAML file

    Returns:
        Hosts in file order

    Raises:
        HostDirectoryError: If the file is missing, unreadable or invalid
    """
    if not file_path.exists():
        raise HostDirectoryError(f"Hosts file does not exist: {file_path}")

    try:
        with open(file_path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise HostDirectoryError(f"Invalid YAML in {file_path}: {e}")

    try:
        hosts = HostsFile(**data).hosts
    except ValidationError as e:
        raise HostDirectoryError(f"Invalid hosts file {file_path}: {e}")

    seen = set()
    for host in hosts:
        if host.id in seen:
            raise HostDirectoryError(f"Duplicate host ID in {file_path}: {host.id}")
        seen.add(host.id)

    return hosts


class YamlHostDirectory:
    """
    Registered hosts, in the order they appear in the hosts file.

    ``reload()`` re-reads the file; on failure the previous list is kept.
    """

    def __init__(self, hosts_file: str):
        self.hosts_file = Path(hosts_file)
        self._hosts: Dict[str, Host] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_hosts(cls, hosts: List[Host]) -> "YamlHostDirectory":
        """Directory backed by an in-memory list (no file)."""
        directory = cls("")
        directory._hosts = {host.id: host for host in hosts}
        return directory

    def load(self) -> List[Host]:
        hosts = load_hosts_file(self.hosts_file)
        with self._lock:
            self._hosts = {host.id: host for host in hosts}
        logger.info(f"Loaded {len(hosts)} hosts from {self.hosts_file}")
        return hosts

    def reload(self) -> List[str]:
        """
        Re-read the hosts file.

        Returns:
            IDs of hosts that were removed
        """
        with self._lock:
            before = set(self._hosts)
        try:
            self.load()
        except HostDirectoryError as e:
            logger.error(f"Host reload failed, keeping previous hosts: {e}")
            return []
        with self._lock:
            removed = sorted(before - set(self._hosts))
        if removed:
            logger.info(f"Hosts removed: {', '.join(removed)}")
        return removed

    def list_hosts(self) -> List[Host]:
        with self._lock:
            return list(self._hosts.values())

    def get_host(self, host_id: str) -> Optional[Host]:
        with self._lock:
            return self._hosts.get(host_id)


class KeyFileResolver:
    """
    Credential resolver reading a host's private key from its ``key_file``.

    Hosts without a key file fall back to the default keys of the local user
    (paramiko looks for them when no key is given).
    """

    def __init__(self, default_key_file: Optional[str] = None):
        self.default_key_file = default_key_file

    def get_private_key(self, host: Host) -> Optional[str]:
        key_file = host.key_file or self.default_key_file
        if not key_file:
            return None
        try:
            return validate_key_path(key_file).read_text()
        except SecurityError as e:
            raise CredentialError(f"Unsafe key file for host {host.id}: {e}")
        except OSError as e:
            raise CredentialError(f"Cannot read key file for host {host.id}: {e.strerror}")
