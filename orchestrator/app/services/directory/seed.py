"""
Directory seed data.

Describes the organizational units, departments, users and groups written
into OpenLDAP on first bootstrap. The JSON form uses the LDAP attribute
names (cn, sn, givenName, mail) so seed documents can be written by hand.
"""

import hashlib
import json
from typing import List, Optional

from pydantic import BaseModel, Field


class OUSpec(BaseModel):
    name: str
    description: str = ""


class DepartmentSpec(BaseModel):
    name: str
    description: str = ""
    manager: str = ""  # uid of the manager, resolved to a DN under ou=users
    repositories: List[str] = Field(default_factory=list)


class UserSpec(BaseModel):
    uid: str
    common_name: str = Field(alias="cn")
    surname: str = Field(alias="sn")
    given_name: str = Field(default="", alias="givenName")
    email: str = Field(alias="mail")
    password: str
    department: str = ""
    repositories: List[str] = Field(default_factory=list)

    class Config:
        populate_by_name = True


class GroupSpec(BaseModel):
    name: str
    description: str = ""
    # uids, or full DNs starting with cn= / uid=
    members: List[str] = Field(default_factory=list)


class InitDataSpec(BaseModel):
    organizational_units: List[OUSpec] = Field(default_factory=list, alias="organizationalUnits")
    departments: List[DepartmentSpec] = Field(default_factory=list)
    users: List[UserSpec] = Field(default_factory=list)
    groups: List[GroupSpec] = Field(default_factory=list)

    class Config:
        populate_by_name = True


def parse_init_data(raw: str) -> Optional[InitDataSpec]:
    """Parse a JSON seed document. Empty input means "no seed"."""
    if not raw or not raw.strip():
        return None
    return InitDataSpec.model_validate(json.loads(raw))


def compute_init_data_hash(init_data: Optional[InitDataSpec]) -> str:
    """Short content hash (first 8 bytes of SHA-256, hex) used to detect seed changes."""
    if init_data is None:
        return ""
    payload = json.dumps(
        init_data.model_dump(by_alias=True, exclude_defaults=True),
        separators=(",", ":"),
        sort_keys=False
    )
    return hashlib.sha256(payload.encode("utf-8")).digest()[:8].hex()


def _user(uid: str, given: str, surname: str, department: str, repositories=None) -> UserSpec:
    return UserSpec(
        uid=uid,
        common_name=f"{given} {surname}",
        surname=surname,
        given_name=given,
        email=f"{uid}@devplatform.local",
        password="password123",
        department=department,
        repositories=repositories or [],
    )


def default_init_data() -> InitDataSpec:
    """Seed used when no seed document is configured."""
    return InitDataSpec(
        organizational_units=[
            OUSpec(name="users", description="Users"),
            OUSpec(name="groups", description="Groups"),
            OUSpec(name="departments", description="Departments"),
        ],
        departments=[
            DepartmentSpec(name="engineering", description="Engineering Department"),
            DepartmentSpec(name="devops", description="DevOps Department"),
            DepartmentSpec(name="datascience", description="Data Science Department"),
            DepartmentSpec(name="frontend", description="Frontend Department"),
        ],
        users=[
            _user("john.doe", "John", "Doe", "engineering", [
                "https://github.com/devplatform/backend",
                "https://github.com/devplatform/frontend",
            ]),
            _user("jane.smith", "Jane", "Smith", "engineering"),
            _user("bob.wilson", "Bob", "Wilson", "devops"),
            _user("alice.chen", "Alice", "Chen", "datascience"),
            _user("mike.jones", "Mike", "Jones", "frontend"),
        ],
        groups=[
            GroupSpec(name="developers", description="All developers", members=["john.doe", "jane.smith", "mike.jones"]),
            GroupSpec(name="admins", description="System administrators", members=["bob.wilson"]),
            GroupSpec(name="leads", description="Team leads", members=["jane.smith"]),
        ],
    )
