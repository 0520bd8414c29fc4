import signal
from logging import getLogger

logger = getLogger(__name__)


class GracefulKiller:
    def __init__(self, on_kill=None):
        self.on_kill = on_kill
        signal.signal(signal.SIGINT, self.exit_gracefully)
        signal.signal(signal.SIGTERM, self.exit_gracefully)

    def exit_gracefully(self, signum, frame):
        logger.warning(f'received signal {signum}, stopping')
        if self.on_kill is not None:
            self.on_kill()


def lsn_to_int(lsn):
    """Convert a textual LSN such as '16/B374D848' to a comparable integer."""
    if lsn is None:
        return None
    if isinstance(lsn, int):
        return lsn
    high, low = lsn.split('/')
    return (int(high, 16) << 32) + int(low, 16)


def format_floats(data):
    if isinstance(data, dict):
        return {k: format_floats(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [format_floats(v) for v in data]
    elif isinstance(data, float):
        return round(data, 3)
    return data
