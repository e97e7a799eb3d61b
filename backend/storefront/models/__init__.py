from .auth import User, UserAddress, SessionToken, SecurityEvent
from .catalog import Category, Product, ProductRating
from .orders import Order, OrderItem
from .promotions import Coupon
from .communications import Notification, OutboxEvent
from .settings import StoreSettings

__all__ = [
    'User', 'UserAddress', 'SessionToken', 'SecurityEvent',
    'Category', 'Product', 'ProductRating',
    'Order', 'OrderItem',
    'Coupon',
    'Notification', 'OutboxEvent',
    'StoreSettings',
]
