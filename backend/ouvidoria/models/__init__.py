from ouvidoria.models.citizen import CitizenProfile  # noqa: F401
from ouvidoria.models.catalog import Secretariat, Queue, UserQueue, SlaRule, Tag  # noqa: F401
from ouvidoria.models.case import Case, Message, MissingField, CaseTag  # noqa: F401
from ouvidoria.models.rule import RoutingRule  # noqa: F401
from ouvidoria.models.audit import AuditLog, SecurityEvent  # noqa: F401
from ouvidoria.models.agent import AgentRun  # noqa: F401
