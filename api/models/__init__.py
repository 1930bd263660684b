from models.actor import Actor
from models.delivery import Delivery, OrderSnapshot, compute_progress
from models.delivery_person import DeliveryPerson, availability_for
from models.delivery_event import DeliveryEvent

__all__ = [
    "Actor",
    "Delivery", "OrderSnapshot", "compute_progress",
    "DeliveryPerson", "availability_for",
    "DeliveryEvent",
]
