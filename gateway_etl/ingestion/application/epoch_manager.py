"""Epoch manager: one strictly increasing gateway epoch per process."""

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gateway_etl.exceptions import EpochUnavailableError
from gateway_etl.ingestion.infrastructure.repository import PaymentRecordRepository
from gateway_etl.storage.database.models import GatewayEpoch
from gateway_etl.utils.logging import get_logger

logger = get_logger(__name__)


class EpochManager:
    """Compute, register and cache the gateway epoch of this process.

    The gateway restarts its log ids at zero on every restart, so records
    are keyed by ``(log_id, gateway_epoch)``. The epoch is one more than
    the highest epoch ever stored or registered, ``0`` on empty storage.
    Registering it means a process that stops before writing anything
    still consumes its epoch.
    """

    def __init__(self, session: Session):
        self.session = session
        self._epoch: int | None = None

    def current_epoch(self) -> int:
        """Epoch of this process, computed on the first call.

        Raises:
            EpochUnavailableError: Storage could not be read or the epoch
                could not be registered. Nothing may be ingested then.
        """
        if self._epoch is not None:
            return self._epoch

        try:
            highest = PaymentRecordRepository(self.session).max_gateway_epoch()
            epoch = 0 if highest is None else highest + 1
            self.session.add(GatewayEpoch(epoch=epoch))
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("gateway_epoch_unavailable", error=str(e), error_type=type(e).__name__)
            raise EpochUnavailableError(
                "Cannot determine the gateway epoch",
                operation="current_epoch",
                original_error=e,
            ) from e

        self._epoch = epoch
        logger.info("gateway_epoch_assigned", gateway_epoch=epoch, previous=highest)
        return epoch
