from label_engine.models.account import Account
from label_engine.models.email import Email
from label_engine.models.email_meta import EmailMeta
from label_engine.models.label import Label, UserLabel, EmailLabel, LabelEmbedding
from label_engine.models.suggestion import PendingLabelSuggestion
from label_engine.models.token_usage import TokenUsageStat

__all__ = [
    "Account",
    "Email",
    "EmailMeta",
    "Label",
    "UserLabel",
    "EmailLabel",
    "LabelEmbedding",
    "PendingLabelSuggestion",
    "TokenUsageStat",
]
