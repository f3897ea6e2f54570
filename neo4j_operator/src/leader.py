from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from neo4j_operator.src.config import LeaderElectionConfig
from neo4j_operator.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class LeaseLeaderElector:
    """Single-active-replica election on a ``coordination.k8s.io/v1`` Lease.

    Only the holder runs the sharded database watch loop, so two replicas
    never issue administrative commands for the same resource.  A cycle
    reads the Lease and then:

    * creates it when missing,
    * renews it when this replica holds it,
    * takes it over once the holder has not renewed for ``leaseDurationSeconds``.

    Conflicts are retried on the next cycle.  A leader that cannot renew for
    ``renew_deadline_seconds`` steps down and ``on_stopped_leading`` fires.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        if lease_duration_seconds < 1:
            raise ValueError("lease_duration_seconds must be >= 1")
        if renew_deadline_seconds < 1:
            raise ValueError("renew_deadline_seconds must be >= 1")
        if retry_period_seconds < 0:
            raise ValueError("retry_period_seconds must be >= 0")
        if renew_deadline_seconds >= lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self._now_fn = now_fn or (lambda: datetime.now(UTC))
        self._is_leader = False

    @classmethod
    def from_config(
        cls,
        coordination_api: CoordinationV1Api,
        namespace: str,
        config: LeaderElectionConfig,
    ) -> LeaseLeaderElector:
        return cls(
            coordination_api=coordination_api,
            namespace=namespace,
            lease_name=config.lease_name,
            identity=config.identity,
            lease_duration_seconds=config.lease_duration_seconds,
            renew_deadline_seconds=config.renew_deadline_seconds,
            retry_period_seconds=config.retry_period_seconds,
        )

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def try_acquire_or_renew(self) -> bool:
        """Run one election cycle; True when this replica holds the Lease afterwards."""
        now = self._now_fn()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._create_lease(now)
            LOGGER.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
            return False

        spec = lease.spec
        if spec is None or spec.holder_identity in (None, "", self.identity):
            return self._update_lease(lease, now)

        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        if spec.renew_time is not None:
            renewed = spec.renew_time if spec.renew_time.tzinfo else spec.renew_time.replace(tzinfo=UTC)
            if (now - renewed).total_seconds() < duration:
                return False

        LOGGER.info("Lease %s held by %s has expired; taking over", self.lease_name, spec.holder_identity)
        return self._update_lease(lease, now)

    def _create_lease(self, now: datetime) -> bool:
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
                lease_transitions=0,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=lease)
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s created concurrently, will retry", self.lease_name)
            else:
                LOGGER.warning("Failed to create lease %s: %s", self.lease_name, exc.reason)
            return False
        LOGGER.info("Created leader lease %s", self.lease_name)
        return True

    def _update_lease(self, lease: V1Lease, now: datetime) -> bool:
        if lease.spec is None:
            lease.spec = V1LeaseSpec()
        previous_holder = lease.spec.holder_identity
        if previous_holder != self.identity:
            lease.spec.acquire_time = now
            lease.spec.lease_transitions = (lease.spec.lease_transitions or 0) + 1
        elif lease.spec.acquire_time is None:
            lease.spec.acquire_time = now
        lease.spec.holder_identity = self.identity
        lease.spec.renew_time = now
        lease.spec.lease_duration_seconds = self.lease_duration_seconds
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
                body=lease,
            )
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s update conflict, will retry", self.lease_name)
            else:
                LOGGER.warning("Failed to update lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def release(self) -> None:
        """Clear the holder so a standby can take over without waiting for expiry."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec and lease.spec.holder_identity == self.identity:
                lease.spec.holder_identity = None
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name, namespace=self.namespace, body=lease
                )
                LOGGER.info("Released leader lease %s", self.lease_name)
        except Exception:
            LOGGER.warning("Failed to release leader lease %s", self.lease_name, exc_info=True)

    def _became_leader(self, waited_seconds: float, on_started_leading: Callable[[], None]) -> None:
        self._is_leader = True
        LOGGER.info("Became leader (identity=%s)", self.identity)
        METRICS.leader_state.set(1)
        METRICS.leader_transitions_total.labels(transition="acquired").inc()
        METRICS.leader_acquire_latency_seconds.observe(waited_seconds)
        on_started_leading()

    def _lost_leadership(self, on_stopped_leading: Callable[[], None]) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()
        on_stopped_leading()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign until *stop_event* is set, invoking the callbacks on each transition."""
        LOGGER.info(
            "Starting leader election for lease %s (identity=%s)", self.lease_name, self.identity
        )
        waiting_since = time.monotonic()
        last_renewed = waiting_since
        METRICS.leader_state.set(0)

        while not stop_event.is_set():
            try:
                held = self.try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election cycle")
                held = False

            if held and not self._is_leader:
                last_renewed = time.monotonic()
                self._became_leader(last_renewed - waiting_since, on_started_leading)
            elif held:
                last_renewed = time.monotonic()
            elif self._is_leader:
                silent_for = time.monotonic() - last_renewed
                if silent_for < self.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lease renewal failed; holding leadership for up to %ss (elapsed %.2fs)",
                        self.renew_deadline_seconds,
                        silent_for,
                    )
                else:
                    LOGGER.warning("Lost leader lease after %.2fs without renewal", silent_for)
                    waiting_since = time.monotonic()
                    self._lost_leadership(on_stopped_leading)
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self.release()
            self._lost_leadership(on_stopped_leading)
