from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from prospect_crm.crm.models import Category


logger = logging.getLogger("prospect_crm.crm")

DEFAULT_CATEGORY_NAME = "其他"


class CategoryResolver:
    """Find-or-create for categories named in free text.

    Creation commits on its own. A unique-constraint violation means a
    concurrent caller created the same name first, so the row is re-read
    instead of surfacing a duplicate error.
    """

    def resolve(self, session: Session, name: str) -> Category:
        existing = self._find(session, name)
        if existing is not None:
            return existing

        category = Category(name=name)
        session.add(category)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            winner = session.scalar(select(Category).where(Category.name == name))
            if winner is None:
                raise
            logger.info("category.resolve_conflict", extra={"category_id": winner.id})
            return winner

        session.refresh(category)
        logger.info("category.created", extra={"category_id": category.id})
        return category

    def _find(self, session: Session, name: str) -> Category | None:
        return session.scalar(select(Category).where(Category.name == name))


category_resolver = CategoryResolver()
