from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from coin_ledger.api import create_app
from coin_ledger.config import LedgerSettings

app = create_app(LedgerSettings.from_env(), root_path="/api")

handler = Mangum(app)
