"""Question catalog: the distinct questions configured under an account's keywords."""

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from visibility_engine.db.models import KeywordModel
from visibility_engine.domain.models import QuestionItem


def question_text(entry: Any) -> str | None:
    """Extract the question from a related_questions entry (string or {"question": ...})."""
    if isinstance(entry, str):
        text = entry
    elif isinstance(entry, dict):
        text = entry.get("question")
    else:
        return None
    if not isinstance(text, str):
        return None
    return text.strip() or None


def list_questions(session: Session, account_id: UUID) -> list[QuestionItem]:
    """Distinct non-blank questions across the account's keywords.

    Keywords are read oldest first and the first keyword carrying a question
    owns it, so indexes are stable while the configuration does not change.
    """
    keywords = session.execute(
        select(KeywordModel)
        .where(KeywordModel.account_id == account_id)
        .order_by(KeywordModel.created_at, KeywordModel.id)
    ).scalars()

    seen: set[str] = set()
    items: list[QuestionItem] = []
    for keyword in keywords:
        for entry in keyword.related_questions or []:
            text = question_text(entry)
            if text is None or text in seen:
                continue
            seen.add(text)
            items.append(
                QuestionItem(keyword_id=keyword.id, question=text, question_index=len(items))
            )
    return items


def keyword_count(items: list[QuestionItem]) -> int:
    """Number of keywords contributing at least one question."""
    return len({item.keyword_id for item in items})
