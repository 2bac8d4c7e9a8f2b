from ouvidoria.auth.permissions import Permission
from ouvidoria.auth.roles import Role, ROLE_PERMISSIONS
from ouvidoria.auth.context import RequestContext

__all__ = ["Permission", "Role", "ROLE_PERMISSIONS", "RequestContext"]
