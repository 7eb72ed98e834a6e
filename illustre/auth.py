"""Authentication: password hashing, session tokens and account management."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from uuid import uuid4

import jwt
from passlib.context import CryptContext

from .config import Settings
from .domain import AuditLogEntry, Organization, Profile, Role, RoleAssignment, UserStatus
from .mailer import is_valid_email
from .permissions import (
    PermissionDeniedError,
    Principal,
    default_route,
    require_role,
)
from .repository import (
    DuplicateRecordError,
    InMemoryRepository,
    RecordNotFoundError,
    in_memory_default,
)

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

JWT_ALGORITHM = "HS256"


class AuthenticationError(RuntimeError):
    """Raised when credentials or a session token are not accepted."""


def hash_password(password: str) -> str:
    """Hash a password for storage."""
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash."""
    return pwd_context.verify(plain_password, hashed_password)


def validate_password_strength(password: str) -> Tuple[bool, str]:
    """Validate password meets security requirements."""
    if len(password) < 8:
        return False, "Password must be at least 8 characters"
    if not any(c.isupper() for c in password):
        return False, "Password must contain at least one uppercase letter"
    if not any(c.islower() for c in password):
        return False, "Password must contain at least one lowercase letter"
    if not any(c.isdigit() for c in password):
        return False, "Password must contain at least one number"
    return True, "Password is valid"


def generate_temporary_password() -> str:
    """Random password that satisfies the strength rules."""
    return f"Tmp-{secrets.token_urlsafe(9)}9a"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def split_full_name(full_name: str) -> Tuple[str, str]:
    parts = full_name.strip().split(maxsplit=1)
    if not parts:
        return "", ""
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1]


def create_access_token(
    user_id: str,
    roles: Iterable[Role],
    active_role: Optional[Role],
    *,
    secret: str,
    expires_hours: int,
) -> str:
    """Create a signed session JWT carrying the held and the active role."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "roles": sorted(role.value for role in roles),
        "role": active_role.value if active_role else None,
        "iat": now,
        "exp": now + timedelta(hours=expires_hours),
    }
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str, *, secret: str) -> dict:
    """Decode and verify a session JWT.

    Raises:
        AuthenticationError: if the token is malformed, tampered or expired
    """
    try:
        return jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Session expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError("Invalid session token") from exc


@dataclass(slots=True)
class Session:
    """Result of a successful sign-in or role switch."""

    token: str
    principal: Principal

    @property
    def needs_role_selection(self) -> bool:
        return len(self.principal.roles) > 1 and self.principal.active_role is None

    @property
    def route(self) -> str:
        if self.principal.active_role is not None:
            return default_route([self.principal.active_role])
        return default_route(self.principal.roles)


class AuthService:
    """Sign-up, sign-in, session tokens and user administration."""

    def __init__(
        self,
        settings: Settings,
        profile_repo: Optional[InMemoryRepository[Profile]] = None,
        role_repo: Optional[InMemoryRepository[RoleAssignment]] = None,
        organization_repo: Optional[InMemoryRepository[Organization]] = None,
        audit_repo: Optional[InMemoryRepository[AuditLogEntry]] = None,
    ) -> None:
        self.settings = settings
        self.profiles = in_memory_default(profile_repo, "profile")
        self.role_assignments = in_memory_default(role_repo, "role assignment")
        self.organizations = in_memory_default(organization_repo, "organization")
        self.audit_logs = in_memory_default(audit_repo, "audit entry")

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------
    def record_audit(
        self,
        actor: Optional[Principal],
        action: str,
        entity_type: str,
        entity_id: Optional[str],
        *,
        old: Optional[Mapping[str, Any]] = None,
        new: Optional[Mapping[str, Any]] = None,
        organization_id: Optional[str] = None,
    ) -> AuditLogEntry:
        """Append an audit entry; a None actor marks a system change."""
        entry = AuditLogEntry(
            id=str(uuid4()),
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=actor.user_id if actor is not None else None,
            organization_id=organization_id,
            old_values=_plain(old or {}),
            new_values=_plain(new or {}),
        )
        self.audit_logs.add(entry.id, entry)
        return entry

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def find_by_email(self, email: str) -> Optional[Profile]:
        email = normalize_email(email)
        return self.profiles.first(lambda profile: profile.email == email)

    def assignments_for(self, user_id: str) -> List[RoleAssignment]:
        return sorted(
            self.role_assignments.filter(lambda item: item.user_id == user_id),
            key=lambda item: item.created_at,
        )

    def roles_for(self, user_id: str) -> List[Role]:
        roles: List[Role] = []
        for assignment in self.assignments_for(user_id):
            if assignment.role not in roles:
                roles.append(assignment.role)
        return roles

    def default_organization(self) -> Organization:
        slug = self.settings.DEFAULT_ORGANIZATION_SLUG
        existing = self.organizations.first(lambda org: org.slug == slug)
        if existing is not None:
            return existing
        organization = Organization(id=str(uuid4()), name="illustre!", slug=slug)
        self.organizations.add(organization.id, organization)
        logger.info("Created default organization %s", slug)
        return organization

    def principal_for(self, profile: Profile, active_role: Optional[Role] = None) -> Principal:
        principal = Principal(profile=profile, assignments=self.assignments_for(profile.id))
        if active_role is not None and active_role in principal.roles:
            principal.active_role = active_role
        elif len(principal.roles) == 1:
            principal.active_role = next(iter(principal.roles))
        elif profile.preferred_role is not None and profile.preferred_role in principal.roles:
            principal.active_role = profile.preferred_role
        return principal

    def issue_token(self, principal: Principal) -> str:
        return create_access_token(
            principal.user_id,
            principal.roles,
            principal.active_role,
            secret=self.settings.JWT_SECRET,
            expires_hours=self.settings.JWT_EXPIRES_HOURS,
        )

    # ------------------------------------------------------------------
    # Account creation
    # ------------------------------------------------------------------
    def register(
        self,
        email: str,
        password: str,
        *,
        full_name: str = "",
        company: str = "",
        phone: str = "",
        roles: Sequence[Role] = (Role.CLIENT,),
        organization_id: Optional[str] = None,
        temp_password: bool = False,
    ) -> Profile:
        email = normalize_email(email)
        if not is_valid_email(email):
            raise ValueError("A valid email address is required")
        if not roles:
            raise ValueError("A user needs at least one role")
        if self.find_by_email(email) is not None:
            raise DuplicateRecordError(f"A user with email {email!r} already exists")
        first_name, last_name = split_full_name(full_name)
        profile = Profile(
            id=str(uuid4()),
            email=email,
            password_hash=hash_password(password),
            first_name=first_name,
            last_name=last_name,
            company=company,
            phone=phone,
            temp_password=temp_password,
        )
        self.profiles.add(profile.id, profile)
        org_id = organization_id or self.default_organization().id
        for role in dict.fromkeys(roles):
            self._assign(profile.id, org_id, role)
        logger.info(
            "Registered user %s with roles %s",
            profile.id,
            [role.value for role in roles],
        )
        return profile

    def _assign(self, user_id: str, organization_id: str, role: Role) -> RoleAssignment:
        assignment = RoleAssignment(
            id=str(uuid4()), user_id=user_id, organization_id=organization_id, role=role
        )
        self.role_assignments.add(assignment.id, assignment)
        return assignment

    def sign_up(
        self, email: str, password: str, full_name: str = "", company: str = ""
    ) -> Profile:
        """Self-service registration; new accounts are clients."""
        ok, message = validate_password_strength(password)
        if not ok:
            raise ValueError(message)
        profile = self.register(
            email, password, full_name=full_name, company=company, roles=(Role.CLIENT,)
        )
        self.record_audit(None, "user.signed_up", "profile", profile.id,
                          new={"email": profile.email, "roles": [Role.CLIENT.value]})
        return profile

    def create_user(
        self,
        actor: Principal,
        email: str,
        *,
        password: Optional[str] = None,
        full_name: str = "",
        company: str = "",
        phone: str = "",
        roles: Sequence[Role] = (Role.CLIENT,),
        organization_id: Optional[str] = None,
    ) -> Tuple[Profile, str]:
        """Admin account creation; returns the profile and its initial password."""
        require_role(actor, Role.ADMIN)
        initial = password or generate_temporary_password()
        ok, message = validate_password_strength(initial)
        if not ok:
            raise ValueError(message)
        profile = self.register(
            email,
            initial,
            full_name=full_name,
            company=company,
            phone=phone,
            roles=roles,
            organization_id=organization_id,
            temp_password=True,
        )
        self.record_audit(
            actor,
            "user.created",
            "profile",
            profile.id,
            new={"email": profile.email, "roles": [role.value for role in roles]},
            organization_id=organization_id,
        )
        return profile, initial

    def ensure_client(
        self,
        email: str,
        full_name: str,
        company: str = "",
        *,
        actor: Optional[Principal] = None,
    ) -> Tuple[Profile, Optional[str]]:
        """Return the client with this email, creating it if needed.

        The temporary password is returned only for newly created accounts.
        An existing profile without the client role gets it added.
        """
        existing = self.find_by_email(email)
        if existing is not None:
            if Role.CLIENT not in self.roles_for(existing.id):
                self._assign(existing.id, self.default_organization().id, Role.CLIENT)
                self.record_audit(actor, "user.roles_updated", "profile", existing.id,
                                  new={"added": Role.CLIENT.value})
            return existing, None
        password = generate_temporary_password()
        profile = self.register(
            email,
            password,
            full_name=full_name,
            company=company,
            roles=(Role.CLIENT,),
            temp_password=True,
        )
        self.record_audit(actor, "user.created", "profile", profile.id,
                          new={"email": profile.email, "roles": [Role.CLIENT.value]})
        return profile, password

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def sign_in(self, email: str, password: str) -> Session:
        profile = self.find_by_email(email)
        if profile is None or not verify_password(password, profile.password_hash):
            logger.warning("Failed sign-in for %s", normalize_email(email))
            raise AuthenticationError("Invalid email or password")
        if not profile.is_active:
            logger.warning("Sign-in refused for inactive user %s", profile.id)
            raise AuthenticationError("This account is inactive")
        principal = self.principal_for(profile)
        logger.info("User %s signed in", profile.id)
        return Session(token=self.issue_token(principal), principal=principal)

    def authenticate(self, token: str) -> Principal:
        payload = decode_access_token(token, secret=self.settings.JWT_SECRET)
        user_id = payload.get("sub")
        if not user_id:
            raise AuthenticationError("Invalid session token")
        try:
            profile = self.profiles.get(user_id)
        except RecordNotFoundError as exc:
            raise AuthenticationError("Unknown user") from exc
        if not profile.is_active:
            raise AuthenticationError("This account is inactive")
        active: Optional[Role] = None
        if payload.get("role"):
            try:
                active = Role(payload["role"])
            except ValueError as exc:
                raise AuthenticationError("Invalid session token") from exc
        return self.principal_for(profile, active)

    def select_role(self, principal: Principal, role: Role, *, remember: bool = False) -> Session:
        if role not in principal.roles:
            raise PermissionDeniedError(f"Role {role.value!r} is not assigned to this user")
        profile = principal.profile
        previous = profile.preferred_role
        profile.preferred_role = role if remember else None
        profile.updated_at = datetime.utcnow()
        self.profiles.upsert(profile.id, profile)
        if previous != profile.preferred_role:
            self.record_audit(principal, "user.role_preference", "profile", profile.id,
                              old={"preferred_role": previous},
                              new={"preferred_role": profile.preferred_role})
        selected = Principal(profile=profile, assignments=principal.assignments, active_role=role)
        return Session(token=self.issue_token(selected), principal=selected)

    def clear_role_preference(self, principal: Principal) -> Profile:
        profile = principal.profile
        previous = profile.preferred_role
        profile.preferred_role = None
        profile.updated_at = datetime.utcnow()
        self.profiles.upsert(profile.id, profile)
        if previous is not None:
            self.record_audit(principal, "user.role_preference", "profile", profile.id,
                              old={"preferred_role": previous},
                              new={"preferred_role": None})
        return profile

    def reset_password(self, principal: Principal, new_password: str) -> Profile:
        ok, message = validate_password_strength(new_password)
        if not ok:
            raise ValueError(message)
        profile = principal.profile
        profile.password_hash = hash_password(new_password)
        profile.temp_password = False
        profile.updated_at = datetime.utcnow()
        self.profiles.upsert(profile.id, profile)
        self.record_audit(principal, "user.password_changed", "profile", profile.id)
        logger.info("User %s changed their password", profile.id)
        return profile

    # ------------------------------------------------------------------
    # Profiles and roles
    # ------------------------------------------------------------------
    def update_profile(
        self,
        principal: Principal,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        company: Optional[str] = None,
        phone: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Profile:
        if user_id != principal.user_id:
            require_role(principal, Role.ADMIN)
        profile = self.profiles.get(user_id)
        changes = {
            key: value.strip()
            for key, value in (
                ("first_name", first_name),
                ("last_name", last_name),
                ("company", company),
                ("phone", phone),
                ("avatar_url", avatar_url),
            )
            if value is not None
        }
        old = {key: getattr(profile, key) for key in changes}
        for key, value in changes.items():
            setattr(profile, key, value)
        profile.updated_at = datetime.utcnow()
        self.profiles.upsert(profile.id, profile)
        self.record_audit(principal, "user.profile_updated", "profile", profile.id,
                          old=old, new=changes)
        return profile

    def list_profiles(self, actor: Principal, role: Optional[Role] = None) -> List[Profile]:
        require_role(actor, Role.ADMIN, Role.CLOSER)
        profiles = self.profiles.list()
        if role is not None:
            profiles = [p for p in profiles if role in self.roles_for(p.id)]
        return sorted(profiles, key=lambda profile: profile.full_name.lower())

    def update_roles(
        self,
        actor: Principal,
        user_id: str,
        roles: Sequence[Role],
        organization_id: Optional[str] = None,
    ) -> List[Role]:
        """Replace the roles of a user inside one organization."""
        require_role(actor, Role.ADMIN)
        if not roles:
            raise ValueError("A user needs at least one role")
        self.profiles.get(user_id)
        if user_id == actor.user_id and Role.ADMIN not in roles:
            raise PermissionDeniedError("Admins cannot remove their own admin role")
        org_id = organization_id or self.default_organization().id
        old_roles = [
            item.role.value
            for item in self.role_assignments.filter(
                lambda item: item.user_id == user_id and item.organization_id == org_id
            )
        ]
        for assignment in self.role_assignments.filter(
            lambda item: item.user_id == user_id and item.organization_id == org_id
        ):
            self.role_assignments.remove(assignment.id)
        for role in dict.fromkeys(roles):
            self._assign(user_id, org_id, role)
        profile = self.profiles.get(user_id)
        if profile.preferred_role is not None and profile.preferred_role not in roles:
            profile.preferred_role = None
            self.profiles.upsert(profile.id, profile)
        logger.info(
            "User %s roles set to %s by %s",
            user_id,
            [role.value for role in roles],
            actor.user_id,
        )
        self.record_audit(
            actor,
            "user.roles_updated",
            "profile",
            user_id,
            old={"roles": old_roles},
            new={"roles": [role.value for role in dict.fromkeys(roles)]},
            organization_id=org_id,
        )
        return self.roles_for(user_id)

    def set_status(self, actor: Principal, user_id: str, status: UserStatus) -> Profile:
        require_role(actor, Role.ADMIN)
        if user_id == actor.user_id and status == UserStatus.INACTIVE:
            raise PermissionDeniedError("Admins cannot deactivate themselves")
        profile = self.profiles.get(user_id)
        old = {"status": profile.status}
        profile.status = status
        profile.updated_at = datetime.utcnow()
        self.profiles.upsert(profile.id, profile)
        self.record_audit(actor, "user.status_changed", "profile", user_id,
                          old=old, new={"status": status})
        logger.info("User %s status set to %s", user_id, status.value)
        return profile


def _plain(values: Mapping[str, Any]) -> Dict[str, Any]:
    """Make audit values storable and JSON friendly."""
    plain: Dict[str, Any] = {}
    for key, value in values.items():
        if hasattr(value, "value"):
            value = value.value
        elif isinstance(value, (date, datetime)):
            value = value.isoformat()
        plain[key] = value
    return plain


__all__ = [
    "AuthenticationError",
    "AuthService",
    "Session",
    "hash_password",
    "verify_password",
    "validate_password_strength",
    "generate_temporary_password",
    "create_access_token",
    "decode_access_token",
]
