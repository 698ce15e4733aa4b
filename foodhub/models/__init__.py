"""SQLAlchemy models."""

from foodhub.models.user import User
from foodhub.models.restaurant import Restaurant, RestaurantBranch
from foodhub.models.menu import MenuCategory, MenuItem, MenuItemVariant, BranchMenuItem
from foodhub.models.customer import Customer, CustomerAddress
from foodhub.models.order import (
    Order,
    OrderItem,
    OrderStatusHistory,
    OrderStatus,
    OrderType,
    PaymentStatus,
    PaymentMethod,
)
from foodhub.models.delivery import (
    Driver,
    DriverWorkingZone,
    OrderAssignment,
    DeliveryTracking,
    DriverStatus,
    AssignmentStatus,
    VehicleType,
)
from foodhub.models.loyalty import (
    LoyaltyProgram,
    LoyaltyTier,
    CustomerLoyaltyPoint,
    LoyaltyPointsHistory,
)
from foodhub.models.stamp_card import StampCard, StampHistory
from foodhub.models.spin_wheel import SpinWheel, SpinWheelPrize, CustomerSpin, SpinResult
from foodhub.models.challenge import (
    Challenge,
    CustomerChallenge,
    ChallengeProgressLog,
    ChallengeEngagementLog,
)
from foodhub.models.feedback import CustomerFeedback
from foodhub.models.security_log import SecurityLog

__all__ = [
    "User",
    "Restaurant",
    "RestaurantBranch",
    "MenuCategory",
    "MenuItem",
    "MenuItemVariant",
    "BranchMenuItem",
    "Customer",
    "CustomerAddress",
    "Order",
    "OrderItem",
    "OrderStatusHistory",
    "OrderStatus",
    "OrderType",
    "PaymentStatus",
    "PaymentMethod",
    "Driver",
    "DriverWorkingZone",
    "OrderAssignment",
    "DeliveryTracking",
    "DriverStatus",
    "AssignmentStatus",
    "VehicleType",
    "LoyaltyProgram",
    "LoyaltyTier",
    "CustomerLoyaltyPoint",
    "LoyaltyPointsHistory",
    "StampCard",
    "StampHistory",
    "SpinWheel",
    "SpinWheelPrize",
    "CustomerSpin",
    "SpinResult",
    "Challenge",
    "CustomerChallenge",
    "ChallengeProgressLog",
    "ChallengeEngagementLog",
    "CustomerFeedback",
    "SecurityLog",
]
