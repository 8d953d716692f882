from __future__ import annotations

import logging
import time
from typing import Any, Optional

from sqlalchemy.orm import Session

from cache import CacheService, get_cache
from categorizer import CategoryMatcher, RandomSource, learn_from_correction
from emails import EmailService
from models import Expense

logger = logging.getLogger(__name__)


class JobQueue:
    """Runs queued work inline. A failed job is logged and yields ``None``."""

    def __init__(
        self,
        session: Session,
        cache: Optional[CacheService] = None,
        email_service: Optional[EmailService] = None,
        rng: Optional[RandomSource] = None,
    ) -> None:
        self.session = session
        self.cache = cache if cache is not None else get_cache()
        self._email_service = email_service
        self.rng = rng
        self._handlers = {
            "categorize-expense": self._categorize_expense,
            "learn-from-correction": self._learn_from_correction,
            "send-email": self._send_email,
            "bulk-recategorize": self._bulk_recategorize,
        }

    @property
    def email_service(self) -> EmailService:
        if self._email_service is None:
            self._email_service = EmailService()
        return self._email_service

    def add(self, job_type: str, data: dict[str, Any]) -> Optional[dict[str, Any]]:
        handler = self._handlers.get(job_type)
        if handler is None:
            logger.warning(f"job_unknown: type={job_type}")
            return None
        try:
            result = handler(data)
        except Exception:
            logger.exception(f"job_failed: type={job_type}")
            self.session.rollback()
            return None
        logger.info(f"job_completed: type={job_type}")
        return result

    def stats(self) -> dict[str, object]:
        return {
            "mode": "sync",
            "waiting": 0,
            "active": 0,
            "completed": 0,
            "failed": 0,
        }

    def _categorize_expense(self, data: dict[str, Any]) -> dict[str, Any]:
        expense = self.session.get(Expense, data["expenseId"])
        if expense is None:
            raise LookupError(f"Expense {data['expenseId']} not found")

        matcher = CategoryMatcher.from_session(self.session, rng=self.rng)
        suggestion = matcher.categorize(
            data.get("description") or expense.description,
            data.get("merchant", expense.merchant),
            data.get("amount"),
            data.get("paymentMethod"),
        )
        expense.category_id = suggestion.category_id
        expense.ai_confidence = suggestion.confidence
        self.session.commit()
        self.cache.invalidate_user(expense.user_id)
        return {
            "id": f"sync-{int(time.time() * 1000)}",
            "expenseId": expense.id,
            **suggestion.to_dict(),
        }

    def _learn_from_correction(self, data: dict[str, Any]) -> dict[str, Any]:
        rule = learn_from_correction(
            self.session,
            data.get("originalCategoryId"),
            data["correctedCategoryId"],
            data.get("description") or "",
            data.get("merchant"),
        )
        self.session.commit()
        return {"id": f"sync-{int(time.time() * 1000)}", "ruleId": rule.id}

    def _send_email(self, data: dict[str, Any]) -> dict[str, Any]:
        kind = data.get("type")
        if kind == "welcome":
            sent = self.email_service.send_welcome_email(data["to"], data["firstName"])
        elif kind == "password-reset":
            sent = self.email_service.send_password_reset_email(
                data["to"], data["firstName"], data["token"]
            )
        else:
            logger.warning(f"job_send_email_skipped: type={kind}")
            return {"skipped": True}
        return {"id": f"sync-{int(time.time() * 1000)}", "sent": sent}

    def _bulk_recategorize(self, data: dict[str, Any]) -> dict[str, Any]:
        logger.info(
            f"job_bulk_recategorize_skipped: user_id={data.get('userId')} "
            f"limit={data.get('limit')}"
        )
        return {"processed": 0, "updated": 0, "failed": 0, "skipped": True}
