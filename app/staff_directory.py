from __future__ import annotations

from typing import Any, Dict, List

from sqlalchemy import select

from database import StaffMember
from errors import NotFoundError


def list_staff(session, only_active: bool = True) -> List[StaffMember]:
    stmt = select(StaffMember)
    if only_active:
        stmt = stmt.where(StaffMember.status == "active")
    stmt = stmt.order_by(StaffMember.name.asc(), StaffMember.id.asc())
    return list(session.scalars(stmt))


def staff_ids(session, only_active: bool = True) -> List[int]:
    return [member.id for member in list_staff(session, only_active=only_active)]


def get_staff(session, staff_id: int) -> StaffMember:
    member = session.get(StaffMember, staff_id)
    if not member:
        raise NotFoundError(f"Staff member {staff_id} was not found.")
    return member


def staff_to_dict(member: StaffMember) -> Dict[str, Any]:
    return {
        "id": member.id,
        "name": member.name,
        "default_role": member.default_role,
        "status": member.status,
    }
