import json
import re

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from categorizer import (
    FALLBACK_CONFIDENCE,
    FALLBACK_REASONING,
    REASONING_TEMPLATES,
    RULE_TABLE,
    CategoryMatcher,
    Rule,
    categorization_stats,
    ensure_rule_categories,
    learn_from_correction,
    seed_default_categories,
)
from database import Base
from errors import FatalConfigurationError
from models import AiCategoryRule, Category


class FixedRandom:
    def __init__(self, factor: float = 1.0) -> None:
        self.factor = factor

    def uniform(self, a: float, b: float) -> float:
        return self.factor

    def choice(self, seq):
        return seq[0]


def _matcher(session: Session, factor: float = 1.0) -> CategoryMatcher:
    seed_default_categories(session)
    ensure_rule_categories(session)
    return CategoryMatcher.from_session(session, rng=FixedRandom(factor))


def test_coffee_shop_is_food_and_dining() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        for factor in (0.91, 1.0):
            suggestion = _matcher(session, factor).categorize("Starbucks coffee")
            assert suggestion.category_name == "Food & Dining"
            assert 0.765 <= suggestion.confidence <= 0.95
            assert "coffee" in suggestion.reasoning

        food = session.scalar(select(Category).where(Category.name == "Food & Dining"))
        assert suggestion.category_id == food.id


def test_default_rng_stays_within_jitter_range() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed_default_categories(session)
        ensure_rule_categories(session)
        matcher = CategoryMatcher.from_session(session)
        for _ in range(20):
            suggestion = matcher.categorize("Starbucks coffee")
            assert 0.765 <= suggestion.confidence <= 0.85


def test_unmatched_text_falls_back_to_other() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        suggestion = _matcher(session).categorize("xyzzy plugh")
        assert suggestion.category_name == "Other"
        assert suggestion.confidence == FALLBACK_CONFIDENCE == 0.15
        assert suggestion.reasoning == FALLBACK_REASONING


def test_merchant_is_part_of_matched_text() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        suggestion = _matcher(session).categorize("xyzzy", merchant="CVS Pharmacy")
        assert suggestion.category_name == "Healthcare"


class PickTemplate(FixedRandom):
    def __init__(self, index: int) -> None:
        super().__init__()
        self.index = index

    def choice(self, seq):
        return seq[self.index]


def test_every_reasoning_template_names_the_matched_term() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed_default_categories(session)
        ensure_rule_categories(session)
        for index in range(len(REASONING_TEMPLATES)):
            matcher = CategoryMatcher.from_session(session, rng=PickTemplate(index))
            suggestion = matcher.categorize("Coffee", merchant="Starbucks")
            assert suggestion.category_name == "Food & Dining"
            assert '"coffee"' in suggestion.reasoning, (index, suggestion.reasoning)


def test_earlier_rule_wins_on_shared_keyword() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        matcher = _matcher(session)
        assert matcher.categorize("office coffee").category_name == "Food & Dining"
        assert matcher.categorize("slack workspace").category_name == "Software & SaaS"


def test_confidence_is_capped() -> None:
    rules = (Rule("Treats", 1.0, (re.compile("pizza", re.IGNORECASE),)),)
    matcher = CategoryMatcher({"Treats": 7}, 1, rng=FixedRandom(1.0), rules=rules)

    suggestion = matcher.categorize("Friday pizza")
    assert suggestion.category_id == 7
    assert suggestion.confidence == 0.95


def test_missing_other_category_is_fatal() -> None:
    matcher = CategoryMatcher({}, None, rng=FixedRandom())
    with pytest.raises(FatalConfigurationError, match="Other"):
        matcher.categorize("xyzzy plugh")


def test_ensure_rule_categories_is_idempotent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed_default_categories(session)
        first = ensure_rule_categories(session)
        count = session.scalar(select(func.count(Category.id)))
        second = ensure_rule_categories(session)

        assert first == second
        assert session.scalar(select(func.count(Category.id))) == count
        assert {rule.category_name for rule in RULE_TABLE} <= set(first)

        devtools = session.scalar(
            select(Category).where(Category.name == "Development Tools")
        )
        assert devtools.color == "#10B981"
        assert devtools.icon == "code"
        assert devtools.is_default is False


def test_learning_does_not_change_matcher_output() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        matcher = _matcher(session)
        before = matcher.categorize("xyzzy plugh", merchant="Plugh Ltd")
        food = session.scalar(select(Category).where(Category.name == "Food & Dining"))

        rule = learn_from_correction(
            session, before.category_id, food.id, "xyzzy plugh", "Plugh Ltd"
        )
        session.commit()

        assert json.loads(rule.keywords_json) == ["xyzzy plugh", "Plugh Ltd"]
        assert rule.confidence == 0.8
        assert session.scalar(select(func.count(AiCategoryRule.id))) == 1

        after = CategoryMatcher.from_session(session, rng=FixedRandom()).categorize(
            "xyzzy plugh", merchant="Plugh Ltd"
        )
        assert after == before


def test_categorization_stats_empty() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        stats = categorization_stats(session, user_id=1)
        assert stats["totalCategorized"] == 0
        assert stats["averageConfidence"] == 0
