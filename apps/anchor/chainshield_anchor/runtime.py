"""Anchoring runtime: one object wiring storage, ledger, batching and verification."""

import logging
import sys
from typing import Mapping, Optional

from chainshield_anchor.anchoring.coordinator import AnchoringCoordinator, BatchFlushResult
from chainshield_anchor.db.session import create_db_engine, create_session_factory, init_db
from chainshield_anchor.ledger.backends import LedgerBackend
from chainshield_anchor.ledger.client import AnchorResult, LedgerClient, NetworkStatus, connect_ledger
from chainshield_anchor.ledger.signer import LedgerSigner
from chainshield_anchor.models import LogRecord
from chainshield_anchor.records.service import LogRecordService
from chainshield_anchor.settings import Settings, get_settings
from chainshield_anchor.verification.service import IntegrityReport, VerificationService

logger = logging.getLogger(__name__)

JSON_LOG_FORMAT = (
    '{"time": "%(asctime)s", "level": "%(levelname)s", '
    '"message": "%(message)s", "module": "%(name)s"}'
)
TEXT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(settings: Optional[Settings] = None):
    """Configure process-wide logging once."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format=JSON_LOG_FORMAT if settings.log_format == "json" else TEXT_LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )


class AnchoringRuntime:
    """Explicit service object built from injected configuration."""

    def __init__(
        self,
        settings: Settings,
        records: LogRecordService,
        ledger: LedgerClient,
    ):
        self.settings = settings
        self.records = records
        self.ledger = ledger
        self.coordinator = AnchoringCoordinator(
            records,
            ledger,
            max_batch_size=settings.batch_max_size,
            flush_interval=settings.batch_interval_seconds,
        )
        self.verifier = VerificationService(records, ledger)

    @classmethod
    async def create(
        cls,
        settings: Optional[Settings] = None,
        session_factory=None,
        signer: Optional[LedgerSigner] = None,
        backend: Optional[LedgerBackend] = None,
    ) -> "AnchoringRuntime":
        """Build the runtime: database, ledger client, coordinator, verifier."""
        settings = settings or get_settings()
        settings.validate_production_settings()

        if session_factory is None:
            engine = create_db_engine(settings.database_url)
            init_db(engine)
            session_factory = create_session_factory(engine)

        ledger = await connect_ledger(settings, signer=signer, backend=backend)
        logger.info(
            "Anchoring runtime ready",
            extra={"mode": ledger.mode.value, "batch_max_size": settings.batch_max_size},
        )
        return cls(settings, LogRecordService(session_factory), ledger)

    async def start(self):
        """Requeue leftover pending records and start the periodic flush."""
        await self.coordinator.restore_pending()
        self.coordinator.start()

    async def stop(self, flush: bool = True):
        """Stop batching, optionally flushing what is still pending, and close the ledger."""
        await self.coordinator.stop()
        if flush:
            while self.coordinator.pending_count:
                result = await self.flush()
                if result.batch_hash is not None and not result.success:
                    logger.warning(f"{self.coordinator.pending_count} records left pending at shutdown")
                    break
        await self.ledger.close()

    async def create_and_maybe_anchor(self, fields: Mapping) -> LogRecord:
        return await self.coordinator.create_and_maybe_anchor(fields)

    async def anchor_immediately(self, record_id: str) -> AnchorResult:
        return await self.coordinator.anchor_immediately(record_id)

    async def flush(self) -> BatchFlushResult:
        return await self.coordinator.flush()

    async def verify_integrity(self, record_id: str) -> IntegrityReport:
        return await self.verifier.verify_integrity(record_id)

    async def get_network_status(self) -> NetworkStatus:
        return await self.ledger.get_network_status()
