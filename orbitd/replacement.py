"""Swap a running container for one built from a new image, with rollback.

The old container is stopped and renamed aside rather than removed, so a
failed replacement can put it back under its original name. Once the old
container has been stopped, ``ReplacementTransaction.run`` always ends in
COMMITTED, ROLLED_BACK or DOWN.
"""

import copy
import logging
import socket as _socket
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from orbitd.errors import EngineOperationError, RollbackFailedError


logger = logging.getLogger(__name__)

BACKUP_SUFFIX = '-orbitd-old'


class Phase(Enum):
    RUNNING = 'running'
    STOPPED = 'stopped'
    RENAMED = 'renamed'
    STARTED = 'started'
    COMMITTED = 'committed'
    ROLLED_BACK = 'rolled_back'
    DOWN = 'down'
    ABORTED = 'aborted'


def backup_name(name: str) -> str:
    return f"{name}{BACKUP_SUFFIX}"


class HostnameSelfCheck:
    """Detects the daemon's own container by matching the host name against container IDs.

    Docker sets a container's host name to the first 12 characters of its ID
    unless told otherwise.
    """

    def __init__(self, hostname: Optional[str] = None):
        self.hostname = hostname if hostname is not None else _socket.gethostname()

    def __call__(self, container_id: str) -> bool:
        return bool(self.hostname) and container_id.startswith(self.hostname)


def build_create_body(image: str, info: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Build a container-create request body from an existing container's inspect data.

    The original Config and HostConfig are copied verbatim apart from the
    image. A container joined to another container's network namespace
    cannot carry its own host name or published ports, so those are dropped
    in that mode.

    Returns:
        Tuple of (create body, {network name: endpoint settings}) where the
        second item holds the networks to connect after creation.
    """
    body = copy.deepcopy(info.get('Config') or {})
    body['Image'] = image
    host_config = copy.deepcopy(info.get('HostConfig') or {})

    network_mode = host_config.get('NetworkMode') or 'default'
    if network_mode.startswith('container:'):
        for key in ('Hostname', 'Domainname', 'ExposedPorts'):
            body.pop(key, None)
        host_config.pop('PortBindings', None)
        body['HostConfig'] = host_config
        return body, {}

    body['HostConfig'] = host_config

    networks = copy.deepcopy((info.get('NetworkSettings') or {}).get('Networks') or {})
    primary = network_mode
    if primary == 'default' and 'bridge' in networks:
        primary = 'bridge'
    primary_endpoint = networks.pop(primary, None)
    if primary_endpoint is not None:
        body['NetworkingConfig'] = {'EndpointsConfig': {primary: primary_endpoint}}
    return body, networks


class ReplacementTransaction:
    """One attempt at replacing a container's image.

    Args:
        engine: Docker Engine client
        container_id: ID of the running container
        target_image: Reference the new container is created from
        cleanup: Remove the old image after a successful swap
        is_self: Predicate telling whether a container ID is the daemon's own
        dry_run: Log the swap instead of performing it
    """

    def __init__(self, engine, container_id: str, target_image: str,
                 cleanup: bool = False,
                 is_self: Optional[Callable[[str], bool]] = None,
                 dry_run: bool = False):
        self.engine = engine
        self.container_id = container_id
        self.target_image = target_image
        self.cleanup = cleanup
        self.is_self = is_self or HostnameSelfCheck()
        self.dry_run = dry_run

        self.name = ''
        self.backup_name = ''
        self.new_container_id: Optional[str] = None
        self.old_image_id = ''
        self.phase = Phase.RUNNING
        self.error: Optional[Exception] = None

    def run(self) -> Phase:
        """
        Drive the swap to a terminal phase.

        Returns:
            ABORTED when nothing was changed (container not running, own
            container, dry run, or the stop failed), COMMITTED on success,
            ROLLED_BACK when the original container was restored.

        Raises:
            EngineOperationError: the container could not be inspected
            RollbackFailedError: the container is down under every name
        """
        info = self.engine.inspect_container(self.container_id)
        self.name = (info.get('Name') or '').lstrip('/')
        self.backup_name = backup_name(self.name)
        self.old_image_id = info.get('Image', '')

        if not (info.get('State') or {}).get('Running'):
            logger.debug(f"Container {self.name} is not running, leaving it alone")
            return self._finish(Phase.ABORTED)

        if self.is_self(self.container_id):
            logger.info(f"Container {self.name} is orbitd itself, skipping self-update")
            return self._finish(Phase.ABORTED)

        body, extra_networks = build_create_body(self.target_image, info)

        if self.dry_run:
            logger.info(f"[DRY RUN] Would replace container {self.name} with image {self.target_image}")
            return self._finish(Phase.ABORTED)

        logger.info(f"Stopping container {self.name}...")
        try:
            self.engine.stop_container(self.container_id)
        except EngineOperationError as e:
            self.error = e
            logger.error(f"Failed to stop container {self.name}: {e}")
            return self._finish(Phase.ABORTED)
        self.phase = Phase.STOPPED

        # From here on every failure must end in ROLLED_BACK or DOWN
        logger.info(f"Renaming old container to {self.backup_name}")
        try:
            self.engine.rename_container(self.container_id, self.backup_name)
        except Exception as e:
            self.error = e
            logger.error(f"Failed to rename container {self.name}: {e}")
            return self._restart_original()
        self.phase = Phase.RENAMED

        logger.info(f"Creating new container {self.name} from {self.target_image}...")
        try:
            self.new_container_id = self.engine.create_container(self.name, body)
            self._connect_networks(extra_networks)
            self.engine.start_container(self.new_container_id)
        except Exception as e:
            self.error = e
            logger.error(f"Failed to start new container {self.name}: {e}")
            return self._rollback()
        self.phase = Phase.STARTED

        self._commit()
        return self.phase

    def _finish(self, phase: Phase) -> Phase:
        self.phase = phase
        return phase

    def _connect_networks(self, networks: Dict[str, Any]) -> None:
        for network, endpoint_config in networks.items():
            try:
                self.engine.connect_network(network, self.new_container_id, endpoint_config)
            except EngineOperationError as e:
                logger.warning(f"Could not connect {self.name} to network {network}: {e}")

    def _restart_original(self) -> Phase:
        """Rename failed: the stopped container still has its name, start it again."""
        try:
            self.engine.start_container(self.container_id)
        except Exception as e:
            return self._down(e)
        logger.warning(f"Restarted container {self.name} after rename failure, update not applied")
        return self._finish(Phase.ROLLED_BACK)

    def _rollback(self) -> Phase:
        logger.info(f"Rolling back {self.name}...")
        if self.new_container_id:
            # The failed container holds the original name
            try:
                self.engine.remove_container(self.new_container_id, force=True)
            except Exception as e:
                logger.warning(f"Could not remove failed container {self.new_container_id[:12]}: {e}")
        try:
            self.engine.rename_container(self.container_id, self.name)
            self.engine.start_container(self.container_id)
        except Exception as e:
            return self._down(e)
        logger.info(f"Successfully rolled back container {self.name}")
        return self._finish(Phase.ROLLED_BACK)

    def _down(self, cause: Exception) -> Phase:
        failed_in = self.phase.value
        self.phase = Phase.DOWN
        logger.critical(
            f"Rollback failed, container {self.name} is DOWN "
            f"(old container kept as {self.container_id[:12]}): {cause}"
        )
        raise RollbackFailedError(self.name, failed_in, cause) from cause

    def _commit(self) -> None:
        logger.info(f"Successfully updated container {self.name}")
        self.phase = Phase.COMMITTED

        logger.info(f"Removing old container {self.backup_name}")
        try:
            self.engine.remove_container(self.container_id)
        except EngineOperationError as e:
            logger.warning(f"Failed to remove old container {self.backup_name}: {e}")

        if self.cleanup and self.old_image_id:
            self._remove_old_image()

    def _remove_old_image(self) -> None:
        try:
            removed = self.engine.remove_image(self.old_image_id)
        except EngineOperationError as e:
            if e.status_code == 409:
                logger.debug(f"Could not remove image {self.old_image_id[:19]} (in use)")
            else:
                logger.warning(f"Failed to remove image {self.old_image_id[:19]}: {e}")
            return
        for item in removed:
            if item.get('Deleted'):
                logger.debug(f"Removed image {item['Deleted']}")
            if item.get('Untagged'):
                logger.debug(f"Untagged image {item['Untagged']}")
