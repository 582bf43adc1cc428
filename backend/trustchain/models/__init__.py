from .profiles import Profile
from .orders import Order, OrderItem, Delivery
from .payments import Payment
from .audit import ActivityLog, FraudAlert
from .notifications import Notification
from .ancillary import InsurancePolicy, RatingReview

__all__ = [
    'Profile',
    'Order', 'OrderItem', 'Delivery',
    'Payment',
    'ActivityLog', 'FraudAlert',
    'Notification',
    'InsurancePolicy', 'RatingReview',
]
