"""
Wallet consumers.

The wallet queues carry balance work that must happen eventually but not on
the request path: creating a wallet for a new user, crediting or debiting a
balance, refunds, releasing pending funds, transfers and withdrawals. The
audit queue carries one record per wallet operation.

INVARIANTS:
1. Amounts travel as decimal strings and are parsed to ``Decimal``; a
   malformed amount is a MessagingError, so the message is retried and then
   dead-lettered rather than applied with a rounded value
2. The ledger and the audit sink are collaborators. A failure there
   propagates to the channel, which retries with backoff
3. The audit consumer is wrapped in IdempotentHandler by the runtime; a
   redelivered audit message is recorded once

WHY THIS MATTERS:
A balance change applied twice, or once with a float-rounded amount, is a
money error. Failing loudly keeps the message on the retry/dead-letter path
where an operator can see it.
"""

from decimal import Decimal, InvalidOperation
from typing import Protocol, Optional, Dict, Any

from campus.logging import get_logger, LogStream
from campus.messaging.message import Message, MessageType, MessagingError
from campus.messaging.notifications import UnexpectedMessageTypeError


class WalletLedger(Protocol):

    def init_wallet(self, user_id: int) -> None:
        ...

    def apply_balance_change(self, user_id: int, amount: Decimal, reason: str, order_number: Optional[str]) -> None:
        ...

    def refund(self, user_id: int, amount: Decimal, order_number: str) -> None:
        ...

    def release_pending(self, user_id: int, amount: Decimal, order_number: str) -> None:
        ...

    def transfer(self, from_user: int, to_user: int, amount: Decimal, reason: str) -> None:
        ...

    def withdraw(self, user_id: int, amount: Decimal, channel: str) -> None:
        ...


class WalletAuditSink(Protocol):
    def record(self, message_id: str, user_id: int, action: str, details: Dict[str, Any]) -> None:
        ...


class LoggingWalletLedger:
    """Ledger that only logs; used when no wallet backend is wired."""

    def __init__(self):
        self.logger = get_logger(LogStream.MESSAGING)

    def init_wallet(self, user_id: int) -> None:
        self.logger.info(f"Wallet init for user {user_id}", extra={"user_id": user_id})

    def apply_balance_change(self, user_id: int, amount: Decimal, reason: str, order_number: Optional[str]) -> None:
        self.logger.info(
            f"Balance change {amount} for user {user_id}",
            extra={"user_id": user_id, "amount": str(amount), "reason": reason, "order_number": order_number},
        )

    def refund(self, user_id: int, amount: Decimal, order_number: str) -> None:
        self.logger.info(
            f"Refund {amount} to user {user_id}",
            extra={"user_id": user_id, "amount": str(amount), "order_number": order_number},
        )

    def release_pending(self, user_id: int, amount: Decimal, order_number: str) -> None:
        self.logger.info(
            f"Pending release {amount} for user {user_id}",
            extra={"user_id": user_id, "amount": str(amount), "order_number": order_number},
        )

    def transfer(self, from_user: int, to_user: int, amount: Decimal, reason: str) -> None:
        self.logger.info(
            f"Transfer {amount} from {from_user} to {to_user}",
            extra={"from_user": from_user, "to_user": to_user, "amount": str(amount), "reason": reason},
        )

    def withdraw(self, user_id: int, amount: Decimal, channel: str) -> None:
        self.logger.info(
            f"Withdrawal {amount} for user {user_id}",
            extra={"user_id": user_id, "amount": str(amount), "channel": channel},
        )


class LoggingWalletAuditSink:
    """Audit sink that writes each record to the messaging log."""

    def __init__(self):
        self.logger = get_logger(LogStream.MESSAGING)

    def record(self, message_id: str, user_id: int, action: str, details: Dict[str, Any]) -> None:
        self.logger.info(
            f"Wallet audit: {action} for user {user_id}",
            extra={"message_id": message_id, "user_id": user_id, "action": action, "details": details},
        )


class WalletConsumer:
    """Handler for the wallet init, balance, transfer and withdrawal queues."""

    def __init__(self, ledger: WalletLedger):
        self.ledger = ledger
        self._handlers = {
            MessageType.WALLET_INIT: self._init,
            MessageType.BALANCE_CHANGE: self._balance_change,
            MessageType.REFUND: self._refund,
            MessageType.PENDING_RELEASE: self._release,
            MessageType.TRANSFER: self._transfer,
            MessageType.WITHDRAWAL: self._withdraw,
        }

    def __call__(self, message: Message) -> None:
        handler = self._handlers.get(message.message_type)
        if handler is None:
            raise UnexpectedMessageTypeError(
                f"Wallet queue cannot handle {message.message_type.value}"
            )
        try:
            handler(message.payload)
        except KeyError as e:
            raise MessagingError(f"{message.message_type.value} payload missing {e}") from e

    def _init(self, p: Dict[str, Any]) -> None:
        self.ledger.init_wallet(p["user_id"])

    def _balance_change(self, p: Dict[str, Any]) -> None:
        self.ledger.apply_balance_change(p["user_id"], parse_amount(p["amount"]), p["reason"], p.get("order_number"))

    def _refund(self, p: Dict[str, Any]) -> None:
        self.ledger.refund(p["user_id"], parse_amount(p["amount"], positive=True), p["order_number"])

    def _release(self, p: Dict[str, Any]) -> None:
        self.ledger.release_pending(p["user_id"], parse_amount(p["amount"], positive=True), p["order_number"])

    def _transfer(self, p: Dict[str, Any]) -> None:
        self.ledger.transfer(p["from_user"], p["to_user"], parse_amount(p["amount"], positive=True), p["reason"])

    def _withdraw(self, p: Dict[str, Any]) -> None:
        self.ledger.withdraw(p["user_id"], parse_amount(p["amount"], positive=True), p["channel"])


class WalletAuditConsumer:
    """Handler for the wallet audit queue."""

    def __init__(self, sink: WalletAuditSink):
        self.sink = sink

    def __call__(self, message: Message) -> None:
        if message.message_type is not MessageType.WALLET_AUDIT:
            raise UnexpectedMessageTypeError(
                f"Expected WALLET_AUDIT, got {message.message_type.value}"
            )
        p = message.payload
        try:
            user_id, action = p["user_id"], p["action"]
        except KeyError as e:
            raise MessagingError(f"WALLET_AUDIT payload missing {e}") from e
        self.sink.record(message.message_id, user_id, action, dict(p.get("details") or {}))


def parse_amount(raw: Any, positive: bool = False) -> Decimal:
    """Parse a wire amount. Floats are refused; they have already lost precision."""
    if isinstance(raw, float):
        raise MessagingError(f"Amount must be a decimal string, got float {raw!r}")
    try:
        amount = Decimal(str(raw))
    except InvalidOperation as e:
        raise MessagingError(f"Invalid amount {raw!r}") from e
    if not amount.is_finite():
        raise MessagingError(f"Invalid amount {raw!r}")
    if positive and amount <= 0:
        raise MessagingError(f"Amount must be positive, got {amount}")
    return amount
