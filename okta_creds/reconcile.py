"""
Merge discovered identity-center accounts into the AWS config document.

Naming: existing profiles keep their names.  A new profile is named after
its sanitized account name.  When two discovered sessions produce the same
new name, both profiles get their session name as prefix.  When the name is
already taken by any profile in the document, only the new profile is
prefixed.  Two new accounts of one session with the same name are a conflict.

Roles: every existing profile whose role is still on offer is kept as is, a
single role is selected automatically, and everything else is handed to a
chooser together with a suggested default.  Deferred accounts keep a profile
marked ``pending`` (or ``reselect`` when their previous role vanished).  A
stale profile next to one that is still valid is marked ``reselect``.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field, replace

from .aws_config import AUTO, DEFAULT_SCOPES, EXPLICIT, PENDING, RESELECT, Profile, SsoSession, sanitize_name
from .errors import ConfigError, ReconciliationConflict

logger = logging.getLogger(__name__)

SUGGESTION_BASES = ("resolved", "available")


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SuggestionPolicy:
    """Ranks an ambiguous account's roles by how the rest of the application
    resolved.

    With ``basis="resolved"`` roles are ordered by the number of accounts
    that already use them, then by the number of accounts offering them;
    ``basis="available"`` swaps the two.  Ties go to the role name in
    ascending order.  No suggestion is made when the winner's share of the
    primary count is below ``min_share``.
    """

    basis: str = "resolved"
    min_share: float = 0.0

    def __post_init__(self):
        if self.basis not in SUGGESTION_BASES:
            raise ConfigError(f"suggestion_basis must be one of {', '.join(SUGGESTION_BASES)}, got {self.basis!r}")
        if not 0.0 <= self.min_share <= 1.0:
            raise ConfigError(f"suggestion_min_share must be between 0 and 1, got {self.min_share}")

    def rank(self, candidates, resolved, available):
        def score(role):
            counts = (resolved[role], available[role])
            return counts if self.basis == "resolved" else counts[::-1]

        return sorted(candidates, key=lambda role: (*(-c for c in score(role)), role))

    def suggest(self, candidates, resolved, available):
        ranked = self.rank(candidates, resolved, available)
        if not ranked:
            return None
        best = ranked[0]
        counts = resolved if self.basis == "resolved" else available
        total = sum(counts.values())
        share = counts[best] / total if total else 0.0
        if self.min_share and share < self.min_share:
            return None
        return best


@dataclass(frozen=True)
class PendingSelection:
    """An account whose role has to be chosen by the caller."""

    session_name: str
    profile_name: str
    account: object
    suggestion: str = None
    previous_role: str = None
    ranking: tuple = ()

    @property
    def roles(self):
        return self.account.roles


class DeferAll:
    """Chooser that leaves every ambiguous account for later."""

    def __call__(self, application, selections):
        return {}


class AcceptSuggestions:
    """Chooser that takes the suggested default wherever there is one."""

    def __call__(self, application, selections):
        return {s.account.id: s.suggestion for s in selections if s.suggestion}


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


@dataclass
class _Plan:
    discovered: object
    previous: dict = field(default_factory=dict)
    names: dict = field(default_factory=dict)


def _describe(session_name, account):
    return f"{session_name}/{account.id} ({account.name})"


def _reserved_names(existing):
    """Names already in the document, mapped to who holds them."""
    reserved = {name: f"unmanaged profile '{name}'" for name in existing.unmanaged_profile_names()}
    for profile in existing.profiles:
        reserved[profile.name] = f"{profile.session}/{profile.account_id} (profile '{profile.name}')"
    return reserved


def _assign_names(plans, reserved):
    """Name the accounts that have no profile yet."""
    base_sessions = {}
    for plan in plans:
        session_name = plan.discovered.session_name
        seen = {}
        for account in plan.discovered.accounts:
            if not account.roles or account.id in plan.previous:
                continue
            base = sanitize_name(account.name) or account.id
            if base in seen:
                raise ReconciliationConflict(
                    base, _describe(session_name, seen[base]), _describe(session_name, account)
                )
            seen[base] = account
            plan.names[account.id] = base
            base_sessions.setdefault(base, []).append(session_name)

    taken = {}
    for plan in plans:
        session_name = plan.discovered.session_name
        for account in plan.discovered.accounts:
            base = plan.names.get(account.id)
            if base is None:
                continue
            name = base
            if len(base_sessions[base]) > 1 or base in reserved:
                name = f"{session_name}-{base}"
            owner = _describe(session_name, account)
            if name in reserved:
                raise ReconciliationConflict(name, reserved[name], owner)
            if name in taken:
                raise ReconciliationConflict(name, taken[name], owner)
            taken[name] = owner
            plan.names[account.id] = name


def _reselect(profile):
    return replace(profile, status=RESELECT if profile.role_name else PENDING)


def _resolve_session(plan, chooser, policy):
    discovered = plan.discovered
    session_name = discovered.session_name
    extra_for_new = (("region", discovered.region),)

    profiles = []
    ambiguous = []
    for account in discovered.accounts:
        if not account.roles:
            continue
        previous = plan.previous.get(account.id)
        if not previous:
            name = plan.names[account.id]
            if len(account.roles) == 1:
                profiles.append(Profile(name, session_name, account.id, account.roles[0], AUTO, None, extra_for_new))
            else:
                ambiguous.append((account, name, None))
            continue

        # Profiles whose role is still offered are kept under their own name.
        valid = [p for p in previous if p.role_name in account.roles]
        stale = [p for p in previous if p.role_name not in account.roles]
        profiles.extend(replace(p, status=None) for p in valid)
        if valid:
            profiles.extend(_reselect(p) for p in stale)
        elif len(account.roles) == 1:
            profiles.extend(replace(p, role_name=account.roles[0], provenance=AUTO, status=None) for p in stale)
        else:
            first, *rest = stale
            ambiguous.append((account, first.name, first))
            profiles.extend(_reselect(p) for p in rest)

    if ambiguous:
        resolved = Counter(role for _, role in {(p.account_id, p.role_name) for p in profiles if p.resolved})
        available = Counter(role for a in discovered.accounts for role in a.roles)
        selections = []
        for account, name, prev in ambiguous:
            ranking = tuple(policy.rank(account.roles, resolved, available))
            selections.append(PendingSelection(
                session_name=session_name,
                profile_name=name,
                account=account,
                suggestion=policy.suggest(account.roles, resolved, available),
                previous_role=prev.role_name if prev else None,
                ranking=ranking,
            ))
        choices = chooser(discovered.application, selections) or {}
        for selection, (_, _, prev) in zip(selections, ambiguous):
            account = selection.account
            extra = prev.extra if prev else extra_for_new
            role = choices.get(account.id)
            if role is not None:
                if role not in account.roles:
                    raise ValueError(f"{role!r} is not a role of account {account.id}")
                profiles.append(Profile(selection.profile_name, session_name, account.id, role, EXPLICIT, None, extra))
            elif selection.previous_role:
                logger.info("role %s of %s is gone, marking for reselection", selection.previous_role, account.id)
                profiles.append(Profile(
                    selection.profile_name, session_name, account.id, selection.previous_role,
                    prev.provenance, RESELECT, extra,
                ))
            else:
                profiles.append(Profile(
                    selection.profile_name, session_name, account.id, None, EXPLICIT, PENDING, extra,
                ))
    return profiles


def merge(existing, discovered, chooser=None, policy=None):
    """Return a new ConfigDocument with *discovered* applications merged in.

    *discovered* is a sequence of ``DiscoveredApplication``; sessions not in
    it, and every unmanaged section, pass through untouched.  *chooser* is
    called once per application as ``chooser(application, selections)`` and
    returns ``{account_id: role_name}`` for the accounts it resolves.
    """
    chooser = chooser or DeferAll()
    policy = policy or SuggestionPolicy()

    by_session = {}
    for item in discovered:
        if item.session_name in by_session:
            raise ReconciliationConflict(
                item.session_name,
                by_session[item.session_name].application.label,
                item.application.label,
            )
        by_session[item.session_name] = item
    rediscovered = set(by_session)
    plans = {name: _Plan(by_session[name]) for name in sorted(by_session)}

    vanished = []
    for profile in sorted(existing.profiles, key=lambda p: p.name):
        plan = plans.get(profile.session)
        if plan is None:
            continue
        account = next((a for a in plan.discovered.accounts if a.id == profile.account_id), None)
        if account is None or not account.roles:
            vanished.append(profile)
        else:
            plan.previous.setdefault(profile.account_id, []).append(profile)

    _assign_names(plans.values(), _reserved_names(existing))

    sessions = []
    profiles = []
    for plan in plans.values():
        item = plan.discovered
        old = existing.session(item.session_name)
        sessions.append(SsoSession(
            name=item.session_name,
            start_url=item.start_url,
            region=item.region,
            scopes=old.scopes if old else DEFAULT_SCOPES,
            extra=old.extra if old else (),
        ))
        profiles.extend(_resolve_session(plan, chooser, policy))

    for profile in vanished:
        if profile.status != RESELECT:
            logger.info("account %s left %s, marking %s for reselection", profile.account_id, profile.session, profile.name)
        profiles.append(replace(profile, status=RESELECT))

    return existing.replace_sessions(rediscovered, sessions, profiles)


def summarize(before, after):
    """``[(profile_name, change)]`` for every profile that differs, sorted."""
    changes = []
    for profile in sorted(after.profiles, key=lambda p: p.name):
        old = before.profile(profile.name)
        if profile.status:
            change = profile.status
        elif old is None:
            change = "new"
        elif old != profile:
            change = "updated"
        else:
            continue
        changes.append((profile.name, change))
    return changes
