import json
import threading
from logging import getLogger

from fastapi import APIRouter, FastAPI
from uvicorn import Config, Server

from .config import Settings
from .orchestrator import Orchestrator, SessionReport
from .utils import GracefulKiller


logger = getLogger(__name__)


class ControlServer:
    """HTTP control endpoint for a running dump session."""

    def __init__(self, config: Settings, orchestrator: Orchestrator):
        self.config = config
        self.orchestrator = orchestrator
        self.http_server = None
        self.app = FastAPI()
        self.router = APIRouter()
        self.router.add_api_route("/status", self.status, methods=["GET"])
        self.router.add_api_route("/cancel", self.cancel, methods=["GET"])
        self.app.include_router(self.router)

    @property
    def enabled(self):
        return bool(self.config.http_host and self.config.http_port)

    def run_server(self):
        if not self.enabled:
            logger.info('http server disabled')
            return
        logger.info(f'starting http server on {self.config.http_host}:{self.config.http_port}')
        config = Config(app=self.app, host=self.config.http_host, port=self.config.http_port)
        self.http_server = Server(config)
        self.http_server.run()

    def stop(self):
        if self.http_server:
            self.http_server.should_exit = True

    def status(self):
        data = self.orchestrator.report.to_dict()
        data['progress'] = self.orchestrator.progress.to_dict()
        return data

    def cancel(self):
        logger.warning('cancel requested over http')
        self.orchestrator.cancel()
        return {"cancelled": True, "status": self.orchestrator.status.value}


class Runner:

    def __init__(self, config: Settings, source_connector=None, destination_connector=None):
        self.config = config
        self.orchestrator = Orchestrator(
            config,
            source_connector=source_connector,
            destination_connector=destination_connector,
        )
        self.control_server = ControlServer(config, self.orchestrator)

    def run(self) -> SessionReport:
        GracefulKiller(on_kill=self.orchestrator.cancel)

        server_thread = threading.Thread(target=self.control_server.run_server, daemon=True)
        server_thread.start()

        logger.info(f'dumping {self.config.table} with {self.config.dump.workers} workers')
        report = self.orchestrator.run()

        self.control_server.stop()
        server_thread.join(timeout=5)

        self.log_report(report)
        return report

    @staticmethod
    def log_report(report: SessionReport):
        if report.dump is not None:
            for result in report.dump.results:
                logger.info(
                    f'range {result.range}: {result.status.value}, rows={result.rows}, '
                    f'elapsed={result.elapsed:.1f}s' + (f', error={result.error}' if result.error else '')
                )
            failed = report.dump.failed_ranges
            if failed:
                logger.error('failed ranges (truncate and re-run): ' + ', '.join(str(r) for r in failed))
        if report.success:
            logger.info(f'session done: {report.status.value}')
        else:
            logger.error(
                f'session ended in {report.status.value}, last successful state '
                f'{report.last_successful_status.value}, error: {report.error}'
            )

    @staticmethod
    def write_report(report: SessionReport, path):
        with open(path, 'w') as f:
            json.dump(report.to_dict(), f, indent=2, default=str)
        logger.info(f'report written to {path}')
