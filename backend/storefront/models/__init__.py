from .auth import User, SessionToken
from .catalog import Category, Product, ProductImage, ProductVariant
from .inventory import Inventory, InventoryAdjustment
from .cart import Cart, CartItem
from .orders import Order, OrderItem, Payment, PaymentEvent

__all__ = [
    'User', 'SessionToken',
    'Category', 'Product', 'ProductImage', 'ProductVariant',
    'Inventory', 'InventoryAdjustment',
    'Cart', 'CartItem',
    'Order', 'OrderItem', 'Payment', 'PaymentEvent',
]
