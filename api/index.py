import logging
import sys
import os

from mangum import Mangum

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from escobar.api import create_app
from escobar.settings import Settings

settings = Settings.from_env()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app(settings, root_path="/api")

handler = Mangum(app)
