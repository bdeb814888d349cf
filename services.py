import math
import uuid
from numbers import Real

import structlog

from exceptions import AccountNotFound, InsufficientFunds, InvalidTransfer, is_write_conflict
from models import FIELD_NAME_PATTERN, RESERVED_FIELDS, Account, TransferRequest, TransferResponse, TransferResult, local_now
from repositories import AccountRepository

logger = structlog.get_logger()


def _validate_transfer(source: str, destination: str, amount, field: str) -> None:
    if isinstance(amount, bool) or not isinstance(amount, Real) or not math.isfinite(amount):
        raise InvalidTransfer(f"Amount must be a number, got {amount!r}")
    if amount <= 0:
        raise InvalidTransfer(f"Amount must be positive, got {amount}")
    if source == destination:
        raise InvalidTransfer("Source and destination must be different accounts")
    if not isinstance(field, str) or not FIELD_NAME_PATTERN.match(field) or field in RESERVED_FIELDS:
        raise InvalidTransfer(f"Invalid balance field: {field!r}")


async def transfer(
    repo: AccountRepository,
    session,
    source: str,
    destination: str,
    amount,
    field: str = "balance",
) -> TransferResult:
    """Move ``amount`` of ``field`` from ``source`` to ``destination`` inside ``session``.

    The debit is written first and checked afterwards: if it leaves the field
    negative, InsufficientFunds is raised before the credit is issued. The
    caller owns the transaction and must abort it on any error, since the
    staged debit is not undone here. Write conflicts are left to the store and
    normally surface when the caller commits.
    """
    _validate_transfer(source, destination, amount, field)

    debited = await repo.increment_field(source, field, -amount, session=session)
    if debited is None:
        raise AccountNotFound(source)

    if debited[field] < 0:
        raise InsufficientFunds(source, field, debited[field] + amount)

    credited = await repo.increment_field(destination, field, amount, session=session)
    if credited is None:
        raise AccountNotFound(destination)

    return TransferResult(
        source=Account.from_document(debited),
        destination=Account.from_document(credited),
    )


class TransferService:
    def __init__(self, account_repo: AccountRepository):
        self.account_repo = account_repo

    async def execute_transfer(self, request: TransferRequest) -> TransferResponse:
        """Run one transfer in its own transaction and commit it."""
        log = logger.bind(
            source=request.source,
            destination=request.destination,
            field=request.field,
            amount=str(request.amount),
        )
        log.info("Processing transfer")

        session = await self.account_repo.start_session()
        try:
            session.start_transaction()
            try:
                result = await transfer(
                    self.account_repo,
                    session,
                    request.source,
                    request.destination,
                    request.amount,
                    request.field,
                )
            except InsufficientFunds as e:
                log.warning("Insufficient funds for transfer", balance=str(e.balance))
                await session.abort_transaction()
                raise
            except AccountNotFound as e:
                log.warning("Account not found", account=e.account)
                await session.abort_transaction()
                raise
            except InvalidTransfer as e:
                log.warning("Transfer rejected", error=str(e))
                await session.abort_transaction()
                raise
            except Exception as e:
                if is_write_conflict(e):
                    log.warning("Write conflict during transfer", error=str(e))
                else:
                    log.error("Transfer failed", error=str(e), exc_info=True)
                await session.abort_transaction()
                raise

            try:
                await session.commit_transaction()
            except Exception as e:
                if is_write_conflict(e):
                    log.warning("Write conflict on commit", error=str(e))
                else:
                    log.error("Commit failed", error=str(e), exc_info=True)
                raise
        finally:
            await session.end_session()

        response = TransferResponse(
            transferId=str(uuid.uuid4()),
            status="committed",
            field=request.field,
            amount=request.amount,
            source=result.source,
            destination=result.destination,
            timestamp=local_now(),
        )

        log.info(
            "Transfer committed",
            transfer_id=response.transferId,
            source_balance=str(getattr(result.source, request.field)),
            destination_balance=str(getattr(result.destination, request.field)),
        )

        return response


# Factory function for dependency injection
def get_transfer_service(account_repo: AccountRepository) -> TransferService:
    return TransferService(account_repo)
