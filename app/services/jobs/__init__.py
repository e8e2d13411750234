"""
Services para jobs e tarefas agendadas.
"""

from .campaigns import (
    DueCampaignsResult,
    process_due_campaigns,
)

from .reminders import (
    ReminderBatchResult,
    process_appointment_reminders,
)

__all__ = [
    # Campanhas agendadas
    "DueCampaignsResult",
    "process_due_campaigns",
    # Lembretes de consulta
    "ReminderBatchResult",
    "process_appointment_reminders",
]
