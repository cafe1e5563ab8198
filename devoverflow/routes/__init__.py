"""Routes package initialization."""

from flask import Blueprint

bp = Blueprint('main', __name__)

from . import main  # Import views
from .editor import create_editor_endpoints
from .observability import create_observability_endpoints

create_editor_endpoints(bp)
create_observability_endpoints(bp)
