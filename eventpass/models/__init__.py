from eventpass.models.booking import Booking
from eventpass.models.event import Event
from eventpass.models.payment import Payment

__all__ = ["Booking", "Event", "Payment"]
