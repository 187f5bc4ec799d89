# Package
from flask import Blueprint

from calsync.logging_config import get_logger

logger = get_logger(__name__)

outbox_bp = Blueprint("calendar_outbox", __name__)

from calsync.outbox import routes
