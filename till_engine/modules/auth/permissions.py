"""
Permisos del POS derivados del rol

El rol viene del usuario autenticado (se resuelve fuera del motor). Se
convierte una sola vez en un conjunto explícito de permisos que los servicios
reciben en el constructor.

- owner/manager/admin: cierres y ventas de días pasados, workspace de la tienda
- admin/manager: anular una línea de una venta guardada
- cashier: solo el día de hoy
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class Role(str, Enum):
    OWNER = "owner"
    MANAGER = "manager"
    ADMIN = "admin"
    CASHIER = "cashier"
    UNKNOWN = "unknown"


ELEVATED_ROLES = {Role.OWNER, Role.MANAGER, Role.ADMIN}
LINE_CANCEL_ROLES = {Role.ADMIN, Role.MANAGER}


def normalize_role(raw: Any) -> Role:
    """Acepta el rol como texto o el payload del usuario (role, user_role, userRole, type)"""
    if isinstance(raw, Role):
        return raw
    if isinstance(raw, dict):
        raw = raw.get("role") or raw.get("user_role") or raw.get("userRole") or raw.get("type")
    value = str(raw or "").strip().lower()
    try:
        return Role(value)
    except ValueError:
        return Role.UNKNOWN


class Permissions(BaseModel):
    """Permisos de un usuario autenticado"""
    role: Role = Field(default=Role.UNKNOWN, description="Rol normalizado")
    can_edit_past_closures: bool = Field(default=False, description="Guardar/editar cierres de días pasados")
    can_edit_past_sales: bool = Field(default=False, description="Registrar ventas en días pasados")
    can_cancel_line: bool = Field(default=False, description="Anular una línea de una venta guardada")
    can_access_workspace: bool = Field(default=False, description="Acceso al workspace de la tienda")

    model_config = {"frozen": True}

    @classmethod
    def for_role(cls, raw_role: Any) -> "Permissions":
        role = normalize_role(raw_role)
        elevated = role in ELEVATED_ROLES
        return cls(
            role=role,
            can_edit_past_closures=elevated,
            can_edit_past_sales=elevated,
            can_cancel_line=role in LINE_CANCEL_ROLES,
            can_access_workspace=elevated,
        )
