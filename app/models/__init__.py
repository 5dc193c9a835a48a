# ParkGate — Database Models
# Import all models here for SQLAlchemy discovery

from app.models.vehicle import Vehicle                 # noqa
from app.models.rate_snapshot import RateSnapshot      # noqa
from app.models.parking_session import ParkingSession  # noqa
from app.models.payment_attempt import PaymentAttempt  # noqa
from app.models.gate_command import GateCommand        # noqa
from app.models.detection_log import DetectionLog      # noqa
from app.models.alert import Alert                     # noqa
