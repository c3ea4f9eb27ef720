"""The polling loop: one sequential pass over all running containers per cycle."""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from orbitd import notify
from orbitd.config import Config
from orbitd.digest import ImageIdentity, identity_changed, image_identity
from orbitd.errors import (
    EngineOperationError,
    MalformedReferenceError,
    NotFoundError,
    OrbitdError,
    PullFailedError,
    RollbackFailedError,
)
from orbitd.policy import ContainerDescriptor, decide, is_enabled
from orbitd.reference import ImageReference, is_image_id
from orbitd.replacement import HostnameSelfCheck, Phase, ReplacementTransaction


logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    """Counters for one cycle."""
    listed: int = 0
    skipped: int = 0
    checked: int = 0
    up_to_date: int = 0
    updated: int = 0
    rolled_back: int = 0
    failed: int = 0
    down: int = 0
    cancelled: bool = False


class Scheduler:
    """
    Runs update cycles on a fixed interval.

    Args:
        config: Resolved configuration
        engine: Docker Engine client
        registry: Registry client used for semver policies
        is_self: Predicate recognising the daemon's own container
        stop_event: Set to cancel; the current cycle ends early and the loop exits
    """

    def __init__(self, config: Config, engine, registry,
                 is_self: Optional[Callable[[str], bool]] = None,
                 stop_event: Optional[threading.Event] = None):
        self.config = config
        self.engine = engine
        self.registry = registry
        self.is_self = is_self or HostnameSelfCheck()
        self.stop_event = stop_event or threading.Event()
        self._stage = 'resolve'

    def run_forever(self) -> None:
        """Fire a cycle now, then every interval until cancelled.

        The next cycle is scheduled from the start of the previous one but
        never starts before that cycle has finished.
        """
        logger.info(f"Starting orbitd, policy {self.config.policy.value}, "
                    f"interval {self.config.interval:g}s")
        while not self.stop_event.is_set():
            started = time.monotonic()
            try:
                self.run_cycle()
            except Exception as e:
                logger.error(f"Error during update check: {e}")
            if self.config.run_once:
                break
            elapsed = time.monotonic() - started
            self.stop_event.wait(max(0.0, self.config.interval - elapsed))
        logger.info("Exiting...")

    def run_cycle(self) -> CycleReport:
        """Check every running container once, in listing order."""
        report = CycleReport()
        if self.config.dry_run:
            logger.info("=== DRY RUN MODE ===")

        try:
            summaries = self.engine.list_containers()
        except EngineOperationError as e:
            logger.error(f"Failed to list containers: {e}")
            return report
        report.listed = len(summaries)

        processed = 0
        for summary in summaries:
            if self.stop_event.is_set():
                report.cancelled = True
                break

            container = ContainerDescriptor.from_summary(summary)
            if not is_enabled(container.labels, self.config.require_label):
                logger.debug(f"Skipping disabled container {container.name}")
                report.skipped += 1
                continue

            # Back-pressure against the engine API between containers
            if processed and self.stop_event.wait(self.config.pace):
                report.cancelled = True
                break
            processed += 1
            report.checked += 1

            logger.debug(f"Checking container {container.name}")
            self._process_guarded(container, report)

        if report.cancelled:
            logger.info("Cycle cancelled, remaining containers not checked")
        logger.info(
            f"Cycle finished: {report.checked} checked, {report.updated} updated, "
            f"{report.rolled_back} rolled back, {report.failed} failed, {report.down} down"
        )
        return report

    def _process_guarded(self, container: ContainerDescriptor, report: CycleReport) -> None:
        self._stage = 'resolve'
        try:
            phase = self.process(container)
        except RollbackFailedError as e:
            # Already logged at CRITICAL by the transaction
            report.down += 1
            logger.debug(f"{container.name} ({container.image}) left down during {self._stage}: {e}")
            return
        except MalformedReferenceError as e:
            report.failed += 1
            logger.error(f"Skipping {container.name}: {e}")
            return
        except PullFailedError as e:
            report.failed += 1
            logger.warning(f"{e}, will retry next cycle ({container.name})")
            return
        except OrbitdError as e:
            report.failed += 1
            logger.error(f"Update of {container.name} ({container.image}) failed "
                         f"during {self._stage}: {e}")
            return
        except Exception as e:
            report.failed += 1
            logger.exception(f"Unexpected error updating {container.name} ({container.image}) "
                             f"during {self._stage}: {e}")
            return

        if phase is None:
            report.up_to_date += 1
        elif phase is Phase.COMMITTED:
            report.updated += 1
        elif phase is Phase.ROLLED_BACK:
            report.rolled_back += 1
        else:
            report.skipped += 1

    def _current_identity(self, container: ContainerDescriptor,
                          reference: ImageReference) -> Optional[ImageIdentity]:
        if not container.image_id:
            return None
        try:
            return image_identity(self.engine.inspect_image(container.image_id), reference)
        except NotFoundError:
            return None

    def process(self, container: ContainerDescriptor) -> Optional[Phase]:
        """
        Resolve, pull, compare and, when needed, replace one container.

        Returns:
            None when no replacement was attempted, otherwise the
            transaction's final phase

        Raises:
            OrbitdError: any failure; the caller logs it and moves on
        """
        if is_image_id(container.image):
            logger.warning(f"Container {container.name} runs untagged image {container.image[:19]}, "
                           f"skipping update")
            return None

        self._stage = 'resolve'
        decision = decide(container, self.config.policy, self.registry,
                          self.config.registry_timeout)
        target = str(decision.target)

        self._stage = 'pull'
        if self.config.dry_run and decision.changed:
            logger.info(f"[DRY RUN] Would pull {target}")
        else:
            logger.debug(f"Pulling {target}...")
            self.engine.pull_image(target)

        self._stage = 'compare'
        before = self._current_identity(container, decision.target)
        if self.config.dry_run and decision.changed:
            changed = True
        else:
            after = image_identity(self.engine.inspect_image(target), decision.target)
            changed = decision.changed or identity_changed(before, after)
        if not changed:
            logger.debug(f"Image {target} already up to date for {container.name}")
            return None

        if self.stop_event.is_set():
            logger.info(f"Cancelled before replacing {container.name}")
            return None

        self._stage = 'replace'
        txn = ReplacementTransaction(
            self.engine, container.id, target,
            cleanup=self.config.cleanup,
            is_self=self.is_self,
            dry_run=self.config.dry_run,
        )
        try:
            phase = txn.run()
        except RollbackFailedError as e:
            notify.send_notifications(self.config.notifications, container.name,
                                      container.image, target, notify.EVENT_DOWN, str(e.cause))
            raise

        if phase is Phase.COMMITTED:
            notify.send_notifications(self.config.notifications, container.name,
                                      container.image, target, notify.EVENT_UPDATED)
        elif phase is Phase.ROLLED_BACK:
            notify.send_notifications(self.config.notifications, container.name,
                                      container.image, target, notify.EVENT_ROLLED_BACK,
                                      str(txn.error))
        elif txn.error is not None:
            raise txn.error
        return phase
