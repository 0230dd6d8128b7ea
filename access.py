"""Role checks used to decide which actions the UI offers.

These predicates are an affordance, not a security boundary: a client can
always issue the underlying request directly. Authoritative enforcement has
to live in the data layer (row-level rules in the store); ``ledger.SqlLedger``
applies the same rules to every write it performs.
"""

from typing import Union

from models import Role

RoleLike = Union[Role, str]


def can_modify(actor_role: RoleLike, actor_id: str, owner_id: str) -> bool:
    if actor_role == Role.admin:
        return True
    return actor_id == owner_id


def can_access_admin_page(role: RoleLike) -> bool:
    return role == Role.admin
