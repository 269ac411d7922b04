"""
Amortization Module

Interest rate policy and equal-installment (French method) loan math.
Pure functions over Decimal; no storage, no I/O.
"""

from decimal import Decimal, localcontext
from dataclasses import dataclass
from typing import List, Tuple

from .errors import InvalidTerm
from .money import AmountLike, ZERO, quantize, to_decimal

# Rate policy, in annual percent
BASE_RATE_PERCENT = Decimal('5')
LARGE_LOAN_THRESHOLD = Decimal('10000')
LARGE_LOAN_SURCHARGE_PERCENT = Decimal('2')
LONG_TERM_THRESHOLD_MONTHS = 24
LONG_TERM_SURCHARGE_PERCENT = Decimal('1')

MONTHS_PER_YEAR = Decimal('12')

# Working precision for the installment formula
PRECISION = 28


@dataclass(frozen=True)
class ScheduleEntry:
    """Single installment in an amortization schedule"""
    payment_number: int
    payment_amount: Decimal
    principal_amount: Decimal
    interest_amount: Decimal
    remaining_balance: Decimal


@dataclass(frozen=True)
class LoanQuote:
    """Terms offered for a loan request"""
    principal: Decimal
    term_months: int
    annual_rate_percent: Decimal
    monthly_payment: Decimal

    @property
    def total_repayment(self) -> Decimal:
        """Monthly payment times the number of months"""
        return quantize(self.monthly_payment * self.term_months)

    @property
    def total_interest(self) -> Decimal:
        return self.total_repayment - self.principal


class AmortizationCalculator:
    """
    Computes loan terms

    Rate policy: 5% base, +2% when the principal exceeds 10,000 and +1%
    when the term exceeds 24 months. The thresholds are fixed policy, not
    call-time parameters.
    """

    @staticmethod
    def _check_term(term_months: int) -> None:
        if isinstance(term_months, bool) or not isinstance(term_months, int) or term_months <= 0:
            raise InvalidTerm(f"Loan term must be a positive number of months, got {term_months!r}")

    def annual_rate(self, principal: AmountLike, term_months: int) -> Decimal:
        """Annual interest rate in percent for a request"""
        self._check_term(term_months)
        rate = BASE_RATE_PERCENT
        if to_decimal(principal) > LARGE_LOAN_THRESHOLD:
            rate += LARGE_LOAN_SURCHARGE_PERCENT
        if term_months > LONG_TERM_THRESHOLD_MONTHS:
            rate += LONG_TERM_SURCHARGE_PERCENT
        return rate

    def monthly_payment(
        self,
        principal: AmountLike,
        annual_rate_percent: AmountLike,
        term_months: int
    ) -> Decimal:
        """
        Equal monthly installment, rounded to cents

        Standard formula: P * i * (1+i)^n / ((1+i)^n - 1) with
        i = rate / 100 / 12. A zero rate, or one so small that (1+i)^n
        is indistinguishable from 1, pays back principal / n.
        """
        self._check_term(term_months)
        principal = to_decimal(principal)
        n = Decimal(term_months)

        with localcontext() as ctx:
            ctx.prec = PRECISION
            periodic_rate = to_decimal(annual_rate_percent) / Decimal('100') / MONTHS_PER_YEAR
            if periodic_rate == ZERO:
                return quantize(principal / n)

            factor = (Decimal('1') + periodic_rate) ** term_months
            if factor == Decimal('1'):
                return quantize(principal / n)

            return quantize(principal * periodic_rate * factor / (factor - Decimal('1')))

    def compute(self, principal: AmountLike, term_months: int) -> Tuple[Decimal, Decimal]:
        """
        Rate and monthly payment for a loan request

        Returns:
            (annual_rate_percent, monthly_payment)

        Raises:
            InvalidTerm: If term_months <= 0
        """
        rate = self.annual_rate(principal, term_months)
        return rate, self.monthly_payment(principal, rate, term_months)

    def quote(self, principal: AmountLike, term_months: int) -> LoanQuote:
        """Full terms for a request, including total repayment"""
        rate, payment = self.compute(principal, term_months)
        return LoanQuote(
            principal=quantize(principal),
            term_months=term_months,
            annual_rate_percent=rate,
            monthly_payment=payment
        )

    def build_schedule(
        self,
        principal: AmountLike,
        annual_rate_percent: AmountLike,
        term_months: int
    ) -> List[ScheduleEntry]:
        """
        Equal installment schedule

        Interest accrues monthly on the remaining balance. The final
        installment pays exactly what is left so the schedule ends at zero.
        """
        payment = self.monthly_payment(principal, annual_rate_percent, term_months)
        periodic_rate = to_decimal(annual_rate_percent) / Decimal('100') / MONTHS_PER_YEAR
        remaining = quantize(principal)

        schedule = []
        for number in range(1, term_months + 1):
            interest = quantize(remaining * periodic_rate)
            principal_part = payment - interest

            if number == term_months or principal_part >= remaining:
                principal_part = remaining
            installment = principal_part + interest
            remaining = remaining - principal_part

            schedule.append(ScheduleEntry(
                payment_number=number,
                payment_amount=installment,
                principal_amount=principal_part,
                interest_amount=interest,
                remaining_balance=remaining
            ))

            if remaining == ZERO:
                break

        return schedule


def compute(principal: AmountLike, term_months: int) -> Tuple[Decimal, Decimal]:
    """Module-level shortcut for AmortizationCalculator().compute"""
    return AmortizationCalculator().compute(principal, term_months)
