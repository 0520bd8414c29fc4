"""
Consistent Parallel Snapshot Dumper Configuration Management

This module provides configuration classes for the dump session: source and
destination PostgreSQL connections, parallel dump behavior, the logical
replication objects used for catch-up and the optional verification step.

Classes:
    PostgresSettings: PostgreSQL connection configuration (source or destination)
    DumpSettings: Parallel dump behavior (workers, batching, retries, planning)
    ReplicationSettings: Slot / publication / subscription naming
    VerifySettings: Post-dump fingerprint verification
    Settings: Main configuration class that orchestrates all settings

Key Features:
    - YAML-based configuration loading
    - Environment variable overrides for connection credentials
    - Type validation and error handling
"""

import os
from dataclasses import dataclass, replace

import yaml
from psycopg2.extensions import make_dsn


def stype(obj):
    """Get the simple type name of an object.

    Example:
        >>> stype([1, 2, 3])
        'list'
    """
    return type(obj).__name__


@dataclass
class PostgresSettings:
    """PostgreSQL connection configuration.

    Attributes:
        host: server hostname or IP address
        port: server port (default: 5432)
        user: role used for both regular and replication connections
        password: password for authentication
        dbname: database holding the table
        connect_timeout: seconds to wait for a connection (default: 10)
        application_name: reported in pg_stat_activity
    """
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = ""
    dbname: str = "postgres"
    connect_timeout: int = 10
    application_name: str = "pg_snapshot_dumper"

    ENV_FIELDS = {
        "HOST": ("host", str),
        "PORT": ("port", int),
        "USER": ("user", str),
        "PASSWORD": ("password", str),
        "DBNAME": ("dbname", str),
    }

    def apply_env(self, prefix):
        for suffix, (attr, cast) in self.ENV_FIELDS.items():
            value = os.environ.get(f"{prefix}_{suffix}")
            if value is not None:
                setattr(self, attr, cast(value))

    def validate(self, name="postgres"):
        if not isinstance(self.host, str):
            raise ValueError(f"{name} host should be string and not {stype(self.host)}")

        if not isinstance(self.port, int):
            raise ValueError(f"{name} port should be int and not {stype(self.port)}")

        if not isinstance(self.user, str):
            raise ValueError(f"{name} user should be string and not {stype(self.user)}")

        if not isinstance(self.password, str):
            raise ValueError(
                f"{name} password should be string and not {stype(self.password)}"
            )

        if not isinstance(self.dbname, str) or not self.dbname:
            raise ValueError(f"{name} dbname should be non-empty string")

        if not isinstance(self.connect_timeout, int) or self.connect_timeout <= 0:
            raise ValueError(f"{name} connect_timeout should be at least 1 second")

    def get_connection_config(self):
        """Build keyword arguments for psycopg2.connect"""
        config = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "dbname": self.dbname,
            "connect_timeout": self.connect_timeout,
            "application_name": self.application_name,
        }
        if self.password:
            config["password"] = self.password
        return config

    def conninfo(self):
        return make_dsn(**self.get_connection_config())

    @classmethod
    def from_dsn(cls, dsn: str, base=None):
        """Parse a libpq conninfo string, keys it leaves out come from base"""
        from psycopg2.extensions import parse_dsn

        params = parse_dsn(dsn)
        settings = replace(base) if base is not None else cls()
        for key, value in params.items():
            if key == "port" or key == "connect_timeout":
                value = int(value)
            if hasattr(settings, key):
                setattr(settings, key, value)
        return settings


@dataclass
class DumpSettings:
    workers: int = 4
    batch_size: int = 5000
    write_retries: int = 3
    retry_backoff: float = 1.0
    sample_size: int = 10000
    skew_factor: float = 2.0
    release_snapshot_after_import: bool = True
    import_timeout: int = 300
    require_empty_destination: bool = True

    def validate(self):
        if not isinstance(self.workers, int) or self.workers < 1:
            raise ValueError(f"dump workers should be positive integer, not {self.workers!r}")

        if not isinstance(self.batch_size, int) or self.batch_size < 1:
            raise ValueError(f"dump batch_size should be positive integer, not {self.batch_size!r}")

        if not isinstance(self.write_retries, int) or self.write_retries < 0:
            raise ValueError("dump write_retries should be non-negative integer")

        if not isinstance(self.retry_backoff, (int, float)) or self.retry_backoff < 0:
            raise ValueError("dump retry_backoff should be non-negative number")

        if not isinstance(self.sample_size, int) or self.sample_size < 0:
            raise ValueError("dump sample_size should be non-negative integer")

        if not isinstance(self.skew_factor, (int, float)) or self.skew_factor <= 1:
            raise ValueError("dump skew_factor should be greater than 1")

        if not isinstance(self.import_timeout, int) or self.import_timeout <= 0:
            raise ValueError("dump import_timeout should be at least 1 second")


@dataclass
class ReplicationSettings:
    slot_name: str = "snapshot_dump_slot"
    publication_name: str = "snapshot_dump_pub"
    subscription_name: str = "snapshot_dump_sub"
    output_plugin: str = "pgoutput"
    # conninfo the destination server uses to reach the source, if it differs
    # from the one this process uses (containers, NAT)
    source_conninfo: str = None
    drop_slot_on_failure: bool = False

    def validate(self):
        for name in ("slot_name", "publication_name", "subscription_name", "output_plugin"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value:
                raise ValueError(f"replication {name} should be non-empty string")

        if self.source_conninfo is not None and not isinstance(self.source_conninfo, str):
            raise ValueError(
                f"replication source_conninfo should be string and not {stype(self.source_conninfo)}"
            )

        if not isinstance(self.drop_slot_on_failure, bool):
            raise ValueError("replication drop_slot_on_failure should be bool")


@dataclass
class VerifySettings:
    enabled: bool = False
    catchup_timeout: int = 600

    def validate(self):
        if not isinstance(self.enabled, bool):
            raise ValueError(f"verify enabled should be bool and not {stype(self.enabled)}")
        if not isinstance(self.catchup_timeout, int) or self.catchup_timeout <= 0:
            raise ValueError("verify catchup_timeout should be at least 1 second")


class Settings:
    DEFAULT_LOG_LEVEL = "info"

    def __init__(self):
        self.source = PostgresSettings()
        self.destination = PostgresSettings()
        self.dump = DumpSettings()
        self.replication = ReplicationSettings()
        self.verify = VerifySettings()
        self.table = ""
        self.key_column = None
        self.settings_file = ""
        self.log_level = Settings.DEFAULT_LOG_LEVEL
        self.http_host = ""
        self.http_port = 0

    def load(self, settings_file, validate=True):
        with open(settings_file, "r") as f:
            data = yaml.safe_load(f.read()) or {}

        self.settings_file = settings_file
        self.source = PostgresSettings(**data.pop("source", {}))
        self.destination = PostgresSettings(**data.pop("destination", {}))
        self.dump = DumpSettings(**data.pop("dump", {}))
        self.replication = ReplicationSettings(**data.pop("replication", {}))
        self.verify = VerifySettings(**data.pop("verify", {}))
        self.table = data.pop("table", "")
        self.key_column = data.pop("key_column", None)
        self.log_level = data.pop("log_level", Settings.DEFAULT_LOG_LEVEL)
        self.http_host = data.pop("http_host", "")
        self.http_port = data.pop("http_port", 0)

        if data:
            raise Exception(f"Unsupported config options: {list(data.keys())}")

        self.apply_env()
        if validate:
            self.validate()

    def apply_env(self):
        self.source.apply_env("SOURCE_PG")
        self.destination.apply_env("DESTINATION_PG")

    def validate_log_level(self):
        if self.log_level not in ["critical", "error", "warning", "info", "debug"]:
            raise ValueError(f"wrong log level {self.log_level}")

    def validate_table(self):
        if not isinstance(self.table, str) or not self.table:
            raise ValueError("table should be non-empty string")
        if self.table.count(".") > 1:
            raise ValueError(f"table should be 'name' or 'schema.name', got {self.table!r}")
        if self.key_column is not None and not isinstance(self.key_column, str):
            raise ValueError(f"key_column should be string and not {stype(self.key_column)}")

    def validate(self):
        self.source.validate("source")
        self.destination.validate("destination")
        self.dump.validate()
        self.replication.validate()
        self.verify.validate()
        self.validate_log_level()
        self.validate_table()
        if not isinstance(self.http_port, int):
            raise ValueError(f"http_port should be int and not {stype(self.http_port)}")
