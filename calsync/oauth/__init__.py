# Package
from flask import Blueprint

from calsync.logging_config import get_logger

logger = get_logger(__name__)

oauth_bp = Blueprint("google_oauth", __name__)

from calsync.oauth import routes
