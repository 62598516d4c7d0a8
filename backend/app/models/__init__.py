from backend.app.models.print_job import PrintJob
from backend.app.models.printer import Printer
from backend.app.models.user import User

__all__ = [
    "PrintJob",
    "Printer",
    "User",
]
