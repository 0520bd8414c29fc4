import time
from dataclasses import dataclass
from logging import getLogger

from .config import ReplicationSettings
from .dump_worker_pool import DumpProgress
from .errors import SequencingError, SubscriptionAttachError
from .utils import lsn_to_int

logger = getLogger(__name__)


@dataclass
class SubscriptionHandle:
    name: str
    slot_name: str
    publication_name: str
    destination_connector: object = None

    POLL_INTERVAL = 0.5

    def latest_lsn(self):
        api = self.destination_connector.connect()
        try:
            return api.get_subscription_lsn(self.name)
        finally:
            api.close()

    def wait_caught_up(self, target_lsn, timeout, cancel_event=None):
        """Wait until the subscription confirmed changes up to target_lsn.

        Returns False on timeout, or as soon as cancel_event is set.
        """
        target = lsn_to_int(target_lsn)
        deadline = time.time() + timeout
        while True:
            current = self.latest_lsn()
            if current is not None and lsn_to_int(current) >= target:
                logger.info(f'subscription {self.name} caught up to {target_lsn} (at {current})')
                return True
            if time.time() >= deadline:
                logger.warning(
                    f'subscription {self.name} did not reach {target_lsn} in {timeout}s (at {current})'
                )
                return False
            if cancel_event is None:
                time.sleep(self.POLL_INTERVAL)
            elif cancel_event.wait(self.POLL_INTERVAL):
                logger.info(f'stopped waiting for subscription {self.name}, cancel requested')
                return False

    def to_dict(self):
        return {
            'name': self.name,
            'slot_name': self.slot_name,
            'publication_name': self.publication_name,
        }


class ReplicationCatchup:
    """Attaches a subscription on the destination to the slot created with the snapshot.

    The slot already exists and the data was already copied by the dump, so the
    subscription is created with create_slot and copy_data disabled. It must not
    be attached before every planned range was copied.
    """

    def __init__(self, source_connector, destination_connector, replication: ReplicationSettings,
                 progress: DumpProgress):
        self.source_connector = source_connector
        self.destination_connector = destination_connector
        self.replication = replication
        self.progress = progress
        self.subscription = None

    def source_conninfo(self):
        if self.replication.source_conninfo:
            return self.replication.source_conninfo
        return self.source_connector.conninfo()

    def attach(self, slot_name, destination_connector=None) -> SubscriptionHandle:
        if self.subscription is not None:
            raise SequencingError(f'subscription {self.subscription.name} is already attached')

        pending = self.progress.pending()
        if pending:
            raise SequencingError(
                f'cannot attach subscription while {len(pending)} ranges are still being dumped: '
                + ', '.join(str(r) for r in pending)
            )
        if not self.progress.all_succeeded():
            raise SequencingError('cannot attach subscription, the dump did not fully succeed')

        destination_connector = destination_connector or self.destination_connector
        name = self.replication.subscription_name
        logger.info(f'attaching subscription {name} to slot {slot_name}')

        api = destination_connector.connect()
        try:
            api.create_subscription(
                name,
                self.source_conninfo(),
                self.replication.publication_name,
                slot_name,
            )
        except SubscriptionAttachError:
            logger.error(f'failed to attach subscription {name}', exc_info=True)
            raise
        finally:
            api.close()

        self.subscription = SubscriptionHandle(
            name=name,
            slot_name=slot_name,
            publication_name=self.replication.publication_name,
            destination_connector=destination_connector,
        )
        logger.info(f'subscription {name} attached, replication continues in background')
        return self.subscription
