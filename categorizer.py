"""Rule-based expense categorizer.

``RULE_TABLE`` is scanned top to bottom and the first pattern that matches
``"{description} {merchant}"`` wins. Order matters: keywords shared by two
rules (``coffee`` is listed under both Food & Dining and Office Supplies,
``slack`` under Software & SaaS and Communication & Productivity) always
resolve to the rule declared first. Reordering the table changes results.

Startup runs ``ensure_rule_categories`` once; ``CategoryMatcher`` is then
built from the resulting name to id map and never touches the database.
"""

from __future__ import annotations

import json
import logging
import random
import re
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from errors import FatalConfigurationError
from models import AiCategoryRule, Category, Expense

logger = logging.getLogger(__name__)

OTHER_CATEGORY = "Other"
FALLBACK_CONFIDENCE = 0.15
MAX_CONFIDENCE = 0.95
FALLBACK_REASONING = "No specific patterns matched, categorized as Other with low confidence"


class RandomSource(Protocol):
    def uniform(self, a: float, b: float) -> float: ...

    def choice(self, seq: Sequence[str]) -> str: ...


@dataclass(frozen=True)
class Rule:
    category_name: str
    confidence: float
    patterns: tuple[re.Pattern[str], ...]


def _rule(category_name: str, confidence: float, *patterns: str) -> Rule:
    return Rule(
        category_name=category_name,
        confidence=confidence,
        patterns=tuple(re.compile(p, re.IGNORECASE) for p in patterns),
    )


RULE_TABLE: tuple[Rule, ...] = (
    _rule(
        "Software & SaaS",
        0.95,
        r"saas|software|subscription|license|api|cloud|hosting|domain|ssl",
        r"aws|azure|google cloud|digitalocean|heroku|vercel|netlify|cloudflare|mongodb atlas",
        r"github|gitlab|bitbucket|jira|confluence|slack|discord|teams|zoom|notion",
        r"figma|adobe|canva|sketch|miro|asana|trello|monday\.com|airtable",
        r"stripe|paypal|square|plaid|twilio|sendgrid|mailchimp|hubspot|salesforce",
        r"datadog|newrelic|sentry|splunk|auth0|okta|firebase|supabase",
        r"openai|anthropic|cohere|huggingface|replicate|pinecone",
    ),
    _rule(
        "IT Equipment & Hardware",
        0.90,
        r"laptop|computer|monitor|keyboard|mouse|webcam|headphones|microphone|router|switch",
        r"macbook|imac|dell|hp|lenovo|asus|acer|surface|ipad|tablet",
        r"apple|microsoft|logitech|bose|sony|samsung|lg|nvidia|amd|intel",
        r"server|rack|storage|ssd|hdd|ram|memory|processor|gpu|cpu",
        r"cable|adapter|charger|dock|stand|case|bag|electronics",
    ),
    _rule(
        "Development Tools",
        0.93,
        r"ide|editor|database|devtools|framework|library|package|npm|yarn",
        r"jetbrains|intellij|pycharm|webstorm|phpstorm|rider|vscode|sublime",
        r"docker|kubernetes|terraform|ansible|jenkins|circleci|travis|gitlab ci",
        r"postgresql|mysql|mongodb|redis|elasticsearch|snowflake|databricks",
        r"postman|insomnia|swagger|rapidapi|graphql|rest|api testing",
    ),
    _rule(
        "Marketing & Analytics",
        0.88,
        r"marketing|analytics|seo|sem|social media|advertising|campaign|crm",
        r"google ads|facebook ads|linkedin ads|twitter ads|tiktok ads|snapchat ads",
        r"google analytics|mixpanel|amplitude|segment|hotjar|fullstory|intercom",
        r"mailchimp|sendgrid|constant contact|klaviyo|marketo|pardot",
        r"buffer|hootsuite|sprout social|later|canva|unbounce|leadpages",
    ),
    _rule(
        "Security & Compliance",
        0.92,
        r"security|cybersecurity|compliance|audit|penetration test|vulnerability|encryption",
        r"ssl certificate|vpn|firewall|antivirus|malware|endpoint protection",
        r"1password|lastpass|bitwarden|okta|auth0|duo|yubikey|rsa|crowdstrike",
        r"soc2|gdpr|hipaa|pci|iso27001|compliance|legal|attorney|law firm",
        r"insurance|liability|cyber insurance|e&o|professional liability",
    ),
    _rule(
        "Communication & Productivity",
        0.85,
        r"communication|collaboration|productivity|project management|time tracking",
        r"slack|discord|teams|zoom|meet|webex|gotomeeting|calendly|acuity",
        r"asana|trello|monday\.com|clickup|basecamp|wrike|smartsheet|airtable",
        r"notion|obsidian|roam|evernote|onenote|dropbox|box|onedrive|drive",
        r"toggl|harvest|clockify|rescuetime|timecamp|hubstaff",
    ),
    _rule(
        "Business Services",
        0.87,
        r"accounting|bookkeeping|payroll|hr|recruiting|legal|consulting|advisory",
        r"quickbooks|xero|freshbooks|wave|gusto|bamboohr|workday|adp",
        r"lawyer|attorney|accountant|cpa|consultant|advisor|coach|mentor",
        r"bank|banking|payment processing|merchant services|fintech|financial",
        r"incorporation|llc|trademark|patent|copyright|intellectual property",
    ),
    _rule(
        "Events & Conferences",
        0.88,
        r"conference|summit|meetup|workshop|training|course|certification|bootcamp",
        r"techcrunch|sxsw|ces|aws summit|google io|apple wwdc|microsoft build",
        r"registration|ticket|travel|hotel|flight|accommodation|venue",
        r"networking|speaking|sponsorship|booth|exhibition|trade show",
        r"udemy|coursera|pluralsight|skillshare|linkedin learning|masterclass",
    ),
    _rule(
        "Research & Data",
        0.90,
        r"market research|data|analytics|survey|research|intelligence|insights",
        r"gartner|forrester|idc|nielsen|mckinsey|deloitte|pwc|kpmg|ey",
        r"survey monkey|typeform|qualtrics|surveyio|google forms",
        r"data science|machine learning|ai|artificial intelligence|ml|nlp",
        r"dataset|api|webhook|integration|middleware|etl|pipeline",
    ),
    _rule(
        "Food & Dining",
        0.85,
        r"restaurant|cafe|coffee|pizza|burger|food|dining|meal|eat|kitchen|bistro|grill|lunch|dinner|breakfast",
        r"mcdonald|starbucks|subway|domino|kfc|taco bell|dunkin|chipotle|panera|olive garden",
        r"delivery|takeout|uber eats|doordash|grubhub|postmates|seamless|caviar",
        r"team lunch|catering|office snacks|company dinner|client dinner|business meal",
    ),
    _rule(
        "Transportation",
        0.80,
        r"gas|fuel|uber|lyft|taxi|metro|bus|train|parking|toll|car wash|automotive|vehicle",
        r"shell|exxon|chevron|bp|citgo|speedway|mobil|texaco",
        r"airport|flight|airline|rental car|car rental|business travel|mileage",
        r"commute|rideshare|public transport|parking meter|garage|valet",
    ),
    _rule(
        "Office Supplies",
        0.82,
        r"office supplies|stationery|paper|pen|pencil|notebook|folder|binder",
        r"staples|office depot|best buy|amazon business|costco business",
        r"printer|ink|toner|copier|scanner|shredder|laminator",
        r"desk|chair|furniture|whiteboard|easel|projector|presentation",
        r"coffee|snacks|water|kitchen supplies|cleaning|janitorial",
    ),
    _rule(
        "Shopping",
        0.75,
        r"store|shop|retail|amazon|target|walmart|costco|mall|clothing|shoes|fashion|electronics",
        r"best buy|home depot|lowes|ikea|macys|nordstrom|tj maxx|marshalls",
        r"online|purchase|buy|order|merchandise|supplies|equipment",
    ),
    _rule(
        "Entertainment",
        0.80,
        r"movie|cinema|theater|netflix|spotify|gaming|concert|show|museum|entertainment",
        r"steam|playstation|xbox|nintendo|cinema|amc|regal|imax",
        r"ticket|event|festival|amusement|team building|company outing",
    ),
    _rule(
        "Bills & Utilities",
        0.90,
        r"electric|electricity|water|gas|internet|phone|cable|rent|mortgage|insurance|utility|bill",
        r"comcast|verizon|att|sprint|tmobile|pg&e|con edison|national grid",
        r"monthly|recurring|subscription|lease|facilities|building|office space",
    ),
    _rule(
        "Healthcare",
        0.85,
        r"medical|doctor|hospital|pharmacy|dentist|clinic|health|prescription|medicine",
        r"cvs|walgreens|rite aid|kaiser|anthem|blue cross|aetna|cigna",
        r"dental|vision|checkup|appointment|wellness|therapy|mental health",
    ),
    _rule(
        "Groceries",
        0.80,
        r"grocery|supermarket|safeway|kroger|whole foods|trader joe|aldi|publix",
        r"market|fresh|organic|produce|dairy|meat|instacart|amazon fresh",
    ),
    _rule(
        "Personal Care",
        0.75,
        r"salon|barbershop|spa|massage|manicure|pedicure|haircut|beauty",
        r"cosmetics|skincare|makeup|shampoo|soap|personal hygiene",
    ),
)

CATEGORY_COLORS = {
    "Software & SaaS": "#3B82F6",
    "IT Equipment & Hardware": "#6B7280",
    "Development Tools": "#10B981",
    "Marketing & Analytics": "#F59E0B",
    "Security & Compliance": "#EF4444",
    "Communication & Productivity": "#8B5CF6",
    "Business Services": "#06B6D4",
    "Events & Conferences": "#F97316",
    "Research & Data": "#84CC16",
    "Office Supplies": "#64748B",
    "Food & Dining": "#EC4899",
    "Transportation": "#14B8A6",
    "Shopping": "#A855F7",
    "Entertainment": "#F43F5E",
    "Bills & Utilities": "#059669",
    "Healthcare": "#DC2626",
    "Groceries": "#65A30D",
    "Personal Care": "#C2410C",
}

CATEGORY_ICONS = {
    "Software & SaaS": "cloud",
    "IT Equipment & Hardware": "laptop",
    "Development Tools": "code",
    "Marketing & Analytics": "chart-bar",
    "Security & Compliance": "shield",
    "Communication & Productivity": "chat",
    "Business Services": "briefcase",
    "Events & Conferences": "calendar",
    "Research & Data": "database",
    "Office Supplies": "folder",
    "Food & Dining": "utensils",
    "Transportation": "car",
    "Shopping": "shopping-bag",
    "Entertainment": "film",
    "Bills & Utilities": "receipt",
    "Healthcare": "heart",
    "Groceries": "shopping-cart",
    "Personal Care": "user",
}

REASONING_TEMPLATES = (
    'Identified "{term}" in the description "{description}", which indicates this is a {category} expense.',
    "The transaction with {merchant} for {amount} matches {category} patterns based on \"{term}\".",
    'Based on "{term}" in the description "{description}" and merchant "{merchant}", this appears to be a {category} expense.',
    'The keyword "{term}" in "{description}" strongly suggests this belongs in {category}.',
    'Transaction pattern analysis shows "{term}" typically indicates {category} expenses.',
)

DEFAULT_CATEGORIES = (
    ("Food & Dining", "Restaurants, cafes, and food delivery", "#10B981", "utensils"),
    ("Transportation", "Gas, public transport, rideshare, parking", "#3B82F6", "car"),
    ("Shopping", "Retail purchases, online shopping", "#8B5CF6", "shopping-bag"),
    ("Entertainment", "Movies, concerts, streaming services", "#F59E0B", "film"),
    ("Bills & Utilities", "Electricity, water, internet, phone", "#EF4444", "receipt"),
    ("Healthcare", "Medical expenses, pharmacy, insurance", "#06B6D4", "heart"),
    ("Travel", "Hotels, flights, vacation expenses", "#84CC16", "plane"),
    ("Education", "Books, courses, tuition", "#6366F1", "book"),
    ("Personal Care", "Haircuts, cosmetics, gym membership", "#EC4899", "user"),
    ("Home & Garden", "Furniture, home improvement, gardening", "#F97316", "home"),
    ("Business", "Business expenses, office supplies", "#64748B", "briefcase"),
    (OTHER_CATEGORY, "Miscellaneous expenses", "#6B7280", "more-horizontal"),
)


@dataclass(frozen=True)
class CategorySuggestion:
    category_id: int
    category_name: str
    confidence: float
    reasoning: str

    def to_dict(self) -> dict[str, object]:
        return {
            "categoryId": self.category_id,
            "categoryName": self.category_name,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
        }


def seed_default_categories(session: Session) -> int:
    existing = set(session.scalars(select(Category.name)).all())
    created = 0
    for name, description, color, icon in DEFAULT_CATEGORIES:
        if name in existing:
            continue
        session.add(
            Category(
                name=name,
                description=description,
                color=color,
                icon=icon,
                is_default=True,
            )
        )
        created += 1
    session.commit()
    if created:
        logger.info(f"seed_default_categories: created={created}")
    return created


def ensure_rule_categories(session: Session) -> dict[str, int]:
    """Create categories named by RULE_TABLE that are missing. Idempotent."""
    categories = {c.name: c for c in session.scalars(select(Category)).all()}
    created = 0
    for rule in RULE_TABLE:
        if rule.category_name in categories:
            continue
        category = Category(
            name=rule.category_name,
            description=f"Auto-created category for {rule.category_name}",
            color=CATEGORY_COLORS.get(rule.category_name, "#6B7280"),
            icon=CATEGORY_ICONS.get(rule.category_name, "folder"),
            is_default=False,
        )
        session.add(category)
        session.flush()
        categories[category.name] = category
        created += 1
    session.commit()
    logger.info(
        f"ensure_rule_categories: rules={len(RULE_TABLE)} created={created}"
    )
    return {name: category.id for name, category in categories.items()}


class CategoryMatcher:
    def __init__(
        self,
        category_ids: dict[str, int],
        other_category_id: Optional[int],
        rng: Optional[RandomSource] = None,
        rules: Sequence[Rule] = RULE_TABLE,
    ) -> None:
        self.other_category_id = other_category_id
        self.rng = rng or random.Random()
        self.rules = [
            (category_ids[rule.category_name], rule)
            for rule in rules
            if rule.category_name in category_ids
        ]

    @classmethod
    def from_session(
        cls, session: Session, rng: Optional[RandomSource] = None
    ) -> "CategoryMatcher":
        rows = session.execute(select(Category.name, Category.id)).all()
        ids = {row.name: row.id for row in rows}
        return cls(ids, ids.get(OTHER_CATEGORY), rng=rng)

    def categorize(
        self,
        description: str,
        merchant: Optional[str] = None,
        amount: Optional[float] = None,
        payment_method: Optional[str] = None,
    ) -> CategorySuggestion:
        text = f"{description} {merchant or ''}".lower()
        for category_id, rule in self.rules:
            for pattern in rule.patterns:
                match = pattern.search(text)
                if not match:
                    continue
                jitter = self.rng.uniform(0.9, 1.0)
                confidence = min(rule.confidence * jitter, MAX_CONFIDENCE)
                logger.debug(
                    f"categorize: category={rule.category_name} "
                    f"pattern={pattern.pattern!r} confidence={confidence:.2f}"
                )
                return CategorySuggestion(
                    category_id=category_id,
                    category_name=rule.category_name,
                    confidence=confidence,
                    reasoning=self._reasoning(
                        description, merchant, amount, match.group(0), rule.category_name
                    ),
                )

        if self.other_category_id is None:
            raise FatalConfigurationError(
                'Default "Other" category not found in database'
            )
        logger.info(f"categorize: no pattern matched text={text.strip()!r}")
        return CategorySuggestion(
            category_id=self.other_category_id,
            category_name=OTHER_CATEGORY,
            confidence=FALLBACK_CONFIDENCE,
            reasoning=FALLBACK_REASONING,
        )

    def _reasoning(
        self,
        description: str,
        merchant: Optional[str],
        amount: Optional[float],
        term: str,
        category_name: str,
    ) -> str:
        template = self.rng.choice(REASONING_TEMPLATES)
        return template.format(
            term=term,
            description=description,
            merchant=merchant or "unknown merchant",
            amount=f"{amount:.2f}" if amount is not None else "an unknown amount",
            category=category_name,
        )


def learn_from_correction(
    session: Session,
    original_category_id: Optional[int],
    corrected_category_id: int,
    description: str,
    merchant: Optional[str] = None,
) -> AiCategoryRule:
    """Record a user correction. The matcher does not read these rows."""
    logger.info(
        f"learn_from_correction: {original_category_id} -> {corrected_category_id}"
    )
    keywords = [value for value in (description, merchant) if value]
    rule = AiCategoryRule(
        category_id=corrected_category_id,
        keywords_json=json.dumps(keywords),
        confidence=0.8,
        is_active=True,
    )
    session.add(rule)
    session.flush()
    return rule


def categorization_stats(session: Session, user_id: int) -> dict[str, object]:
    total, avg_confidence = session.execute(
        select(func.count(Expense.id), func.avg(Expense.ai_confidence)).where(
            Expense.user_id == user_id, Expense.ai_confidence.is_not(None)
        )
    ).one()
    return {
        "totalCategorized": int(total or 0),
        "aiCategorized": int(total or 0),
        "ruleBased": 0,
        "averageConfidence": float(avg_confidence or 0),
    }
