from chatshop.models.store import Store, Product
from chatshop.models.inventory import Ingredient
from chatshop.models.order import Order, OrderStatus, PaymentMethod, Transaction

__all__ = ["Store", "Product", "Ingredient", "Order", "OrderStatus", "PaymentMethod", "Transaction"]
