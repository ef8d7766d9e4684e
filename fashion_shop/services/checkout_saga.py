"""
Order creation as a saga over independently committed counters.

Each step commits on its own. When a later step fails, the completed steps are
compensated in reverse order before the failure propagates, so no partial debit
outlives a failed checkout.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from fashion_shop.observability.metrics import increment_counter
from fashion_shop.services.flash_sale_service import FlashSaleService
from fashion_shop.services.stock_ledger import StockLedger

logger = logging.getLogger(__name__)


class SagaStep(ABC):
    def __init__(self, reference: str):
        self.reference = reference

    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    def execute(self) -> None: ...

    @abstractmethod
    def compensate(self) -> None: ...

    def run(self) -> None:
        logger.debug("[checkout=%s] STEP %s", self.reference, self.name())
        self.execute()

    def run_compensation(self) -> None:
        logger.info("[checkout=%s] COMPENSATE %s", self.reference, self.name())
        self.compensate()


class DebitStock(SagaStep):
    def __init__(self, reference: str, ledger: StockLedger, product_id: int, size: str, color: str, quantity: int):
        super().__init__(reference)
        self.ledger = ledger
        self.product_id = product_id
        self.size = size
        self.color = color
        self.quantity = quantity

    def name(self) -> str:
        return f"DebitStock({self.product_id}/{self.size}/{self.color} x{self.quantity})"

    def execute(self) -> None:
        self.ledger.debit(self.product_id, self.size, self.color, self.quantity, reason="sale")

    def compensate(self) -> None:
        self.ledger.credit(self.product_id, self.size, self.color, self.quantity, reason="compensation")


class ReserveFlashSale(SagaStep):
    def __init__(
        self,
        reference: str,
        flash_sales: FlashSaleService,
        flash_sale_id: int,
        product_id: int,
        quantity: int,
        now: Optional[datetime] = None,
    ):
        super().__init__(reference)
        self.flash_sales = flash_sales
        self.flash_sale_id = flash_sale_id
        self.product_id = product_id
        self.quantity = quantity
        self.now = now

    def name(self) -> str:
        return f"ReserveFlashSale({self.flash_sale_id}/{self.product_id} x{self.quantity})"

    def execute(self) -> None:
        self.flash_sales.reserve(self.flash_sale_id, self.product_id, self.quantity, now=self.now)

    def compensate(self) -> None:
        self.flash_sales.release(self.flash_sale_id, self.product_id, self.quantity)


class FinalizeOrder(SagaStep):
    """Persist the order in one transaction; a failure rolls it back, so nothing to compensate."""

    def __init__(self, reference: str, persist: Callable[[], object]):
        super().__init__(reference)
        self.persist = persist
        self.result: object = None

    def name(self) -> str:
        return "FinalizeOrder"

    def execute(self) -> None:
        self.result = self.persist()

    def compensate(self) -> None:
        pass


class CheckoutSaga:
    def __init__(self, db_session: Session, reference: str):
        self.db = db_session
        self.reference = reference
        self.completed: List[SagaStep] = []
        self.failed_step: Optional[SagaStep] = None

    def execute(self, steps: List[SagaStep]) -> None:
        """Run every step; on failure compensate what already ran and re-raise."""
        self.completed = []
        self.failed_step = None
        try:
            for step in steps:
                self.failed_step = step
                step.run()
                self.completed.append(step)
            self.failed_step = None
        except Exception as exc:
            self.db.rollback()
            logger.warning(
                "[checkout=%s] failed at %s: %s",
                self.reference,
                self.failed_step.name() if self.failed_step else "?",
                exc,
            )
            increment_counter("checkout_saga_failures_total")
            self.compensate()
            raise

    def compensate(self) -> None:
        for step in reversed(self.completed):
            try:
                step.run_compensation()
            except Exception:
                # Credits only increment; reaching this means the database itself failed
                self.db.rollback()
                logger.exception("[checkout=%s] compensation failed at %s", self.reference, step.name())
                increment_counter("checkout_compensation_failures_total")
