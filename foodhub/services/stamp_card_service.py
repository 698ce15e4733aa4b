"""Stamp cards: stamps earned from orders, completion and rewards."""

import logging
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from foodhub.db.base import utcnow
from foodhub.models.loyalty import LoyaltyProgram
from foodhub.models.stamp_card import StampCard, StampHistory

logger = logging.getLogger(__name__)

STAMP_SPEND_UNIT = Decimal("10")

CATEGORY_KEYWORDS = {
    "beverages": ("beverage", "drink", "coffee", "tea", "juice", "soda", "water"),
    "desserts": ("dessert", "sweet", "cake", "ice cream", "pastry"),
    "mains": ("main", "entree", "dish", "meal", "course"),
}
HEALTHY_KEYWORDS = ("healthy", "organic", "low-calorie", "low-fat", "vegetarian", "vegan")

DEFAULT_REWARDS = {
    "general": ("Free dessert or beverage", Decimal("8.00")),
    "beverages": ("Free beverage of your choice", Decimal("5.00")),
    "desserts": ("Free dessert of your choice", Decimal("7.00")),
    "mains": ("Free main course up to $15", Decimal("15.00")),
    "healthy": ("Free healthy meal option", Decimal("12.00")),
}
FALLBACK_REWARD = ("Free item of your choice", Decimal("10.00"))


def _matches(texts: Iterable[Optional[str]], keywords: Iterable[str]) -> bool:
    lowered = [t.lower() for t in texts if t]
    return any(k in text for k in keywords for text in lowered)


def is_healthy(menu_item) -> bool:
    tags = {str(t).lower() for t in (menu_item.dietary_tags or [])}
    return bool(tags.intersection(HEALTHY_KEYWORDS)) or _matches([menu_item.name], HEALTHY_KEYWORDS)


def item_qualifies(order_item, card_type: str) -> bool:
    """Whether an order line counts towards a card of ``card_type``."""
    if card_type == "general":
        return True
    menu_item = order_item.menu_item
    if menu_item is None:
        return False
    if card_type == "healthy":
        return is_healthy(menu_item)
    category = menu_item.category
    if category is None or card_type not in CATEGORY_KEYWORDS:
        return False
    return _matches([category.name, category.slug], CATEGORY_KEYWORDS[card_type])


class StampCardService:
    """Stamp bookkeeping for one session. Like ``LoyaltyService`` it never commits."""

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def qualifying_amount(order, card_type: str) -> Decimal:
        if card_type == "general" and not order.items:
            return Decimal(str(order.subtotal or 0))
        return sum(
            (Decimal(str(item.total_price)) for item in order.items if item_qualifies(item, card_type)),
            Decimal("0"),
        )

    def stamps_for_order(self, order, card_type: str) -> int:
        """One stamp per 10 spent on qualifying items, at least one when anything qualifies."""
        amount = self.qualifying_amount(order, card_type)
        if amount <= 0:
            return 0
        return max(1, int(amount // STAMP_SPEND_UNIT))

    @staticmethod
    def check_completion(card: StampCard) -> bool:
        return card.stamps_earned >= card.stamps_required

    def active_cards(self, customer_id: int, restaurant_id: Optional[int] = None) -> List[StampCard]:
        query = self.db.query(StampCard).filter(
            StampCard.customer_id == customer_id,
            StampCard.is_active.is_(True),
            StampCard.is_completed.is_(False),
        )
        if restaurant_id is not None:
            query = query.join(LoyaltyProgram).filter(LoyaltyProgram.restaurant_id == restaurant_id)
        return query.order_by(StampCard.id).all()

    def add_stamps_for_order(self, order) -> List[StampCard]:
        """Stamp every open card of the order's restaurant that the order qualifies for."""
        stamped = []
        for card in self.active_cards(order.customer_id, order.restaurant_id):
            added = self.stamps_for_order(order, card.card_type)
            if added <= 0:
                continue

            before = card.stamps_earned
            card.stamps_earned = before + added
            self.db.add(StampHistory(
                stamp_card_id=card.id,
                order_id=order.id,
                customer_id=order.customer_id,
                stamps_added=added,
                stamps_before=before,
                stamps_after=card.stamps_earned,
                action_type="stamp_earned",
                description=f"Earned {added} stamp(s) from order #{order.order_number}",
                details={
                    "order_number": order.order_number,
                    "order_total": str(order.total_amount),
                    "card_type": card.card_type,
                    "stamps_required": card.stamps_required,
                    "progress_percentage": card.progress_percentage,
                },
            ))
            if self.check_completion(card):
                self._complete(card, order)
            stamped.append(card)

        if stamped:
            self.db.flush()
        return stamped

    def _complete(self, card: StampCard, order) -> None:
        card.is_completed = True
        card.completed_at = utcnow()
        self.db.add(StampHistory(
            stamp_card_id=card.id,
            order_id=order.id,
            customer_id=order.customer_id,
            stamps_added=0,
            stamps_before=card.stamps_earned,
            stamps_after=card.stamps_earned,
            action_type="card_completed",
            description=f"Stamp card completed! Reward: {card.reward_description}",
            details={
                "order_number": order.order_number,
                "reward_description": card.reward_description,
                "reward_value": str(card.reward_value),
                "card_type": card.card_type,
            },
        ))
        logger.info(
            f"Stamp card {card.id} completed for customer {card.customer_id} "
            f"({card.card_type}, order {order.id})"
        )

    def create_card(self, customer_id: int, program: LoyaltyProgram, card_type: str,
                    stamps_required: int = 10, reward_description: Optional[str] = None,
                    reward_value: Optional[Decimal] = None) -> StampCard:
        default_description, default_value = DEFAULT_REWARDS.get(card_type, FALLBACK_REWARD)
        card = StampCard(
            customer_id=customer_id,
            loyalty_program_id=program.id,
            card_type=card_type,
            stamps_required=stamps_required,
            stamps_earned=0,
            is_completed=False,
            is_active=True,
            reward_description=reward_description or default_description,
            reward_value=reward_value if reward_value is not None else default_value,
        )
        self.db.add(card)
        self.db.flush()
        return card

    def find_open_card(self, customer_id: int, program_id: int, card_type: str) -> Optional[StampCard]:
        return self.db.query(StampCard).filter(
            StampCard.customer_id == customer_id,
            StampCard.loyalty_program_id == program_id,
            StampCard.card_type == card_type,
            StampCard.is_active.is_(True),
            StampCard.is_completed.is_(False),
        ).first()

    def claim_reward(self, card: StampCard, order_id: Optional[int] = None) -> StampHistory:
        """Close a completed card; raises ``ValueError`` if it is not completed or already claimed."""
        if not card.is_completed:
            raise ValueError("The stamp card is not completed yet.")
        if not card.is_active:
            raise ValueError("The reward for this stamp card has already been claimed.")

        card.is_active = False
        entry = StampHistory(
            stamp_card_id=card.id,
            order_id=order_id,
            customer_id=card.customer_id,
            stamps_added=0,
            stamps_before=card.stamps_earned,
            stamps_after=card.stamps_earned,
            action_type="reward_claimed",
            description=f"Reward claimed: {card.reward_description}",
            details={"reward_value": str(card.reward_value)},
        )
        self.db.add(entry)
        self.db.flush()
        logger.info(f"Stamp card {card.id} reward claimed by customer {card.customer_id}")
        return entry

    def statistics(self, customer_id: int) -> dict:
        cards = self.db.query(StampCard).filter(StampCard.customer_id == customer_id).all()
        by_type = {}
        for card in cards:
            entry = by_type.setdefault(card.card_type, {"count": 0, "completed": 0, "active": 0})
            entry["count"] += 1
            if card.is_completed:
                entry["completed"] += 1
            elif card.is_active:
                entry["active"] += 1
        completed = [c for c in cards if c.is_completed]
        return {
            "total_cards": len(cards),
            "active_cards": sum(1 for c in cards if c.is_active and not c.is_completed),
            "completed_cards": len(completed),
            "total_stamps_earned": sum(c.stamps_earned for c in cards),
            "total_rewards_earned": float(sum((c.reward_value for c in completed), Decimal("0"))),
            "cards_by_type": by_type,
        }
