from pg_snapshot_dumper.config import Settings


CONFIG_FILE = 'tests/tests_config.yaml'
TEST_TABLE_NAME = 'public.events'
TEST_COLUMNS = ['id', 'name', 'amount']


def make_rows(count, start=1):
    return [(i, f'event_{i}', i * 10) for i in range(start, start + count)]


def make_settings(workers=4, **overrides):
    """Settings for an in-memory session. Overrides use section__attr keys, e.g. dump__batch_size=100"""
    settings = Settings()
    settings.table = TEST_TABLE_NAME
    settings.dump.workers = workers
    settings.dump.batch_size = 500
    settings.dump.retry_backoff = 0
    settings.dump.import_timeout = 5
    settings.verify.catchup_timeout = 1
    for name, value in overrides.items():
        section, _, attr = name.partition('__')
        if attr:
            setattr(getattr(settings, section), attr, value)
        else:
            setattr(settings, section, value)
    settings.validate()
    return settings
