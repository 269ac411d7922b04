"""
Transfer Service

Validates and executes account-to-account transfers, plus deposits from
and withdrawals to the bank. Validation runs in a fixed order and every
rejection happens before any balance is touched; the balance check is
repeated under the account lock by the ledger itself.
"""

from .errors import AccountNotFound, InsufficientFunds, LedgerError, SelfTransferNotAllowed
from .ledger import BANK_ACCOUNT_ID, LedgerStore, Transaction, TransactionKind
from .logging_config import get_logger, log_action
from .money import AmountLike, positive_amount


class TransferService:
    """Moves money between accounts through the ledger"""

    def __init__(self, ledger: LedgerStore):
        self.ledger = ledger
        self.logger = get_logger("ledger_engine.transfers")

    def transfer(
        self,
        from_account_id: str,
        to_account_number: str,
        amount: AmountLike,
        description: str = ""
    ) -> Transaction:
        """
        Transfer money to another account by account number

        Checks, in order: amount is positive, destination is not the
        source, source has enough money, destination exists. The bank's
        reserved id as destination pays money out to the bank.

        Args:
            from_account_id: Caller's account ID (trusted, from the session)
            to_account_number: Recipient account number
            amount: Amount to move
            description: Free text shown in statements

        Returns:
            The recorded transfer Transaction

        Raises:
            InvalidAmount, SelfTransferNotAllowed, InsufficientFunds,
            AccountNotFound
        """
        try:
            amount = positive_amount(amount)

            if to_account_number == BANK_ACCOUNT_ID:
                to_account_id = BANK_ACCOUNT_ID
            else:
                destination = self.ledger.get_account_by_number(to_account_number)
                to_account_id = destination.id if destination else None

            if to_account_id == from_account_id:
                raise SelfTransferNotAllowed("Cannot transfer money to the same account")

            source = self.ledger.get_account(from_account_id)
            if not source:
                raise AccountNotFound(from_account_id)
            if source.balance < amount:
                raise InsufficientFunds(from_account_id, source.balance, amount)

            if to_account_id is None:
                raise AccountNotFound(to_account_number)

            transaction = self.ledger.atomic_transfer(
                from_account_id, to_account_id, amount, TransactionKind.TRANSFER,
                description=description
            )
        except LedgerError as e:
            log_action(
                self.logger, "warning", f"Transfer rejected: {e}",
                action="transfer", resource=f"account:{from_account_id}",
                extra={"error": type(e).__name__, "to_account_number": to_account_number}
            )
            raise

        log_action(
            self.logger, "info", "Transfer completed",
            action="transfer", resource=f"transaction:{transaction.id}",
            extra={
                "from_account": from_account_id,
                "to_account": transaction.to_account_id,
                "amount": str(transaction.amount)
            }
        )
        return transaction

    def deposit(
        self,
        account_id: str,
        amount: AmountLike,
        description: str = "Deposit"
    ) -> Transaction:
        """
        Bring money in from the bank

        Raises:
            InvalidAmount, AccountNotFound, AccountClosed
        """
        amount = positive_amount(amount)
        if not self.ledger.get_account(account_id):
            raise AccountNotFound(account_id)
        return self.ledger.atomic_transfer(
            BANK_ACCOUNT_ID, account_id, amount, TransactionKind.DEPOSIT,
            description=description
        )

    def withdraw(
        self,
        account_id: str,
        amount: AmountLike,
        description: str = "Withdrawal"
    ) -> Transaction:
        """
        Pay money out to the bank

        Raises:
            InvalidAmount, AccountNotFound, InsufficientFunds, AccountClosed
        """
        amount = positive_amount(amount)
        account = self.ledger.get_account(account_id)
        if not account:
            raise AccountNotFound(account_id)
        if account.balance < amount:
            raise InsufficientFunds(account_id, account.balance, amount)
        return self.ledger.atomic_transfer(
            account_id, BANK_ACCOUNT_ID, amount, TransactionKind.WITHDRAWAL,
            description=description
        )
