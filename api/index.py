from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from economy.api import app
from economy.config import setup_logging

setup_logging(app.state.settings.log_level)

handler = Mangum(app)
