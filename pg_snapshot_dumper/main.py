#!/usr/bin/env python3

import argparse
import logging
import os
import sys

from .common import EXIT_FAILURE, EXIT_OK, EXIT_VERIFICATION_MISMATCH
from .config import PostgresSettings, Settings
from .consistency_verifier import ConsistencyVerifier
from .errors import VerificationMismatchError
from .pg_api import PostgresConnector
from .runner import Runner


def set_logging_config(tags, log_level_str=None):
    """Configure logging to output only to stderr."""
    handlers = [logging.StreamHandler(sys.stderr)]

    log_levels = {
        'critical': logging.CRITICAL,
        'error': logging.ERROR,
        'warning': logging.WARNING,
        'info': logging.INFO,
        'debug': logging.DEBUG,
    }

    log_level = log_levels.get(log_level_str)
    if log_level is None:
        logging.warning(f'Unknown log level {log_level_str}, setting info')
        log_level = logging.INFO

    logging.basicConfig(
        level=log_level,
        format=f'[{tags} %(asctime)s %(levelname)8s] %(message)s',
        handlers=handlers,
    )


def build_settings(args) -> Settings:
    # precedence: command line, then environment, then config file
    config = Settings()
    if args.config and os.path.exists(args.config):
        config.load(args.config, validate=False)
    elif args.config != 'config.yaml':
        raise FileNotFoundError(f'config file {args.config} not found')
    else:
        config.apply_env()

    if args.source:
        config.source = PostgresSettings.from_dsn(args.source, base=config.source)
    if args.destination:
        config.destination = PostgresSettings.from_dsn(args.destination, base=config.destination)
    if args.table:
        config.table = args.table
    if args.key:
        config.key_column = args.key
    if args.workers is not None:
        config.dump.workers = args.workers
    if args.slot:
        config.replication.slot_name = args.slot
    if args.publication:
        config.replication.publication_name = args.publication
    if args.subscription:
        config.replication.subscription_name = args.subscription
    if args.verify:
        config.verify.enabled = True
    if args.log_level:
        config.log_level = args.log_level

    config.validate()
    return config


def run_dump(args, config: Settings):
    set_logging_config(f'dump {config.table}', log_level_str=config.log_level)
    runner = Runner(config)
    report = runner.run()
    if args.report:
        runner.write_report(report, args.report)
    return report.exit_code


def run_verify(args, config: Settings):
    set_logging_config(f'verify {config.table}', log_level_str=config.log_level)
    logger = logging.getLogger(__name__)
    logger.info('make sure writes to the table are paused, fingerprints need a quiet table')

    source_api = PostgresConnector(config.source).connect(autocommit=False)
    destination_api = PostgresConnector(config.destination).connect(autocommit=False)
    try:
        structure = source_api.get_table_structure(config.table, config.key_column)
        ConsistencyVerifier().verify(source_api, destination_api, structure)
    except VerificationMismatchError as e:
        logger.error(str(e))
        return EXIT_VERIFICATION_MISMATCH
    finally:
        source_api.close()
        destination_api.close()
    return EXIT_OK


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "mode", help="run mode",
        type=str,
        choices=["dump", "verify"])
    parser.add_argument("--config", help="config file path", default='config.yaml', type=str)
    parser.add_argument("--source", help="source connection string", type=str)
    parser.add_argument("--destination", help="destination connection string", type=str)
    parser.add_argument("--table", help="table to dump, 'name' or 'schema.name'", type=str)
    parser.add_argument("--key", help="ordering key column, defaults to the primary key", type=str)
    parser.add_argument("--workers", help="number of parallel dump workers", type=int, default=None)
    parser.add_argument("--slot", help="replication slot name", type=str)
    parser.add_argument("--publication", help="publication name", type=str)
    parser.add_argument("--subscription", help="subscription name", type=str)
    parser.add_argument(
        "--verify", action="store_true",
        help="after attaching, wait for catch-up and compare fingerprints (writes must be paused)",
    )
    parser.add_argument("--report", help="write the final report as json to this file", type=str)
    parser.add_argument(
        "--log-level", dest="log_level", type=str, default=None,
        choices=["critical", "error", "warning", "info", "debug"],
    )
    args = parser.parse_args()

    try:
        config = build_settings(args)
    except (ValueError, FileNotFoundError) as e:
        parser.error(str(e))

    if args.mode == 'dump':
        exit_code = run_dump(args, config)
    elif args.mode == 'verify':
        exit_code = run_verify(args, config)
    else:
        exit_code = EXIT_FAILURE
    sys.exit(exit_code)


if __name__ == '__main__':
    main()
