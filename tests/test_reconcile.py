from collections import Counter

import pytest

from conftest import discovered
from okta_creds.aws_config import AUTO, EXPLICIT, PENDING, RESELECT, ConfigDocument, Profile, SsoSession
from okta_creds.errors import ConfigError, ReconciliationConflict
from okta_creds.reconcile import AcceptSuggestions, DeferAll, SuggestionPolicy, merge, summarize


class Recorder:
    """Chooser that records what it was asked and answers from a dict."""

    def __init__(self, answers=None):
        self.answers = answers or {}
        self.selections = []

    def __call__(self, application, selections):
        self.selections.extend(selections)
        return {s.account.id: self.answers[s.account.id] for s in selections if s.account.id in self.answers}


def roundtrip(document):
    return ConfigDocument.parse(document.render())


class TestNaming:
    def test_cross_session_collision_prefixes_both(self):
        a = discovered("session-a", {("111111111111", "prod"): ["Admin"]})
        b = discovered("session-b", {("222222222222", "prod"): ["Admin"]})
        result = merge(ConfigDocument(), [a, b])
        names = {p.name: (p.session, p.account_id) for p in result.profiles}
        assert names == {
            "session-a-prod": ("session-a", "111111111111"),
            "session-b-prod": ("session-b", "222222222222"),
        }

    def test_no_collision_keeps_account_name(self):
        a = discovered("session-a", {("111111111111", "Prod Account"): ["Admin"]})
        b = discovered("session-b", {("222222222222", "Dev"): ["Admin"]})
        result = merge(ConfigDocument(), [a, b])
        assert sorted(p.name for p in result.profiles) == ["dev", "prod-account"]

    def test_collision_within_session_is_conflict(self):
        a = discovered("session-a", {("111111111111", "Prod"): ["Admin"], ("222222222222", "prod"): ["Admin"]})
        with pytest.raises(ReconciliationConflict) as excinfo:
            merge(ConfigDocument(), [a])
        error = excinfo.value
        assert error.name == "prod"
        assert "111111111111" in error.first and "222222222222" in error.second
        assert "111111111111" in str(error) and "222222222222" in str(error)

    def test_unmanaged_profile_name_is_respected(self):
        existing = ConfigDocument(extras=(("profile prod", (("region", "us-east-1"),)),))
        a = discovered("session-a", {("111111111111", "prod"): ["Admin"]})
        result = merge(existing, [a])
        assert [p.name for p in result.profiles] == ["session-a-prod"]
        assert result.extras == existing.extras

    def test_profiles_of_other_sessions_are_reserved(self):
        other = Profile("prod", "legacy", "999999999999", "Admin", EXPLICIT)
        existing = ConfigDocument(
            sessions=(SsoSession("legacy", "https://legacy.awsapps.com/start", "us-east-1"),),
            profiles=(other,),
        )
        result = merge(existing, [discovered("session-a", {("111111111111", "prod"): ["Admin"]})])
        assert result.profile("prod") == other
        assert result.profile("session-a-prod").account_id == "111111111111"
        assert result.session("legacy") == existing.sessions[0]

    def test_accounts_without_roles_get_no_profile(self):
        a = discovered("session-a", {("111111111111", "prod"): [], ("222222222222", "dev"): ["Admin"]})
        result = merge(ConfigDocument(), [a])
        assert [p.account_id for p in result.profiles] == ["222222222222"]

    def test_duplicate_session_names_conflict(self):
        a = discovered("aws", {("1", "a"): ["Admin"]}, label="AWS")
        b = discovered("aws", {("2", "b"): ["Admin"]}, label="A.W.S.")
        with pytest.raises(ReconciliationConflict):
            merge(ConfigDocument(), [a, b])


class TestRoleSelection:
    def test_single_role_is_auto(self):
        result = merge(ConfigDocument(), [discovered("s", {("1", "one"): ["Admin"]})])
        (profile,) = result.profiles
        assert profile.role_name == "Admin"
        assert profile.provenance == AUTO
        assert profile.status is None

    def test_suggests_most_resolved_role(self):
        accounts = {("A123", "target"): ["ReadOnly", "PowerUser"]}
        for i in range(8):
            accounts[(f"P{i:03d}", f"power-{i}")] = ["PowerUser"]
        for i in range(2):
            accounts[(f"R{i:03d}", f"read-{i}")] = ["ReadOnly"]
        chooser = Recorder()
        merge(ConfigDocument(), [discovered("s", accounts)], chooser=chooser)
        (selection,) = chooser.selections
        assert selection.account.id == "A123"
        assert selection.suggestion == "PowerUser"
        assert selection.ranking == ("PowerUser", "ReadOnly")

    def test_suggestion_counts_previous_explicit_choices(self):
        accounts = {("A123", "target"): ["ReadOnly", "PowerUser"]}
        previous = []
        for i in range(10):
            role = "PowerUser" if i < 8 else "ReadOnly"
            accounts[(f"X{i:03d}", f"acct-{i}")] = ["ReadOnly", "PowerUser"]
            previous.append(Profile(f"acct-{i}", "s", f"X{i:03d}", role, EXPLICIT))
        existing = ConfigDocument(sessions=(SsoSession("s", "https://s.awsapps.com/start", "eu-west-1"),), profiles=tuple(previous))
        chooser = Recorder()
        result = merge(existing, [discovered("s", accounts)], chooser=chooser)
        assert [s.account.id for s in chooser.selections] == ["A123"]
        assert chooser.selections[0].suggestion == "PowerUser"
        assert Counter(p.role_name for p in result.profiles if p.account_id != "A123") == {"PowerUser": 8, "ReadOnly": 2}

    def test_explicit_choice_is_preserved(self):
        existing = ConfigDocument(profiles=(Profile("one", "s", "1", "ReadOnly", EXPLICIT),))
        accounts = {("1", "one"): ["Admin", "ReadOnly"], ("2", "two"): ["Admin"], ("3", "three"): ["Admin"]}
        chooser = Recorder()
        result = merge(existing, [discovered("s", accounts)], chooser=chooser)
        assert chooser.selections == []
        assert result.profile("one") == Profile("one", "s", "1", "ReadOnly", EXPLICIT)

    def test_user_named_profile_keeps_its_name(self):
        mine = Profile("my-admin", "s", "1", "ReadOnly", EXPLICIT)
        chooser = Recorder()
        result = merge(ConfigDocument(profiles=(mine,)), [discovered("s", {("1", "one"): ["Admin", "ReadOnly"]})], chooser=chooser)
        assert chooser.selections == []
        assert result.profiles == (mine,)

    def test_several_profiles_for_one_account_survive(self):
        existing = ConfigDocument(profiles=(
            Profile("prod-admin", "s", "1", "Admin", EXPLICIT),
            Profile("prod-ro", "s", "1", "ReadOnly", EXPLICIT),
        ))
        result = merge(existing, [discovered("s", {("1", "prod"): ["Admin", "ReadOnly"]})])
        assert {p.name: (p.role_name, p.status) for p in result.profiles} == {
            "prod-admin": ("Admin", None),
            "prod-ro": ("ReadOnly", None),
        }

    def test_stale_sibling_of_valid_profile_is_marked(self):
        existing = ConfigDocument(profiles=(
            Profile("prod-admin", "s", "1", "Admin", EXPLICIT),
            Profile("prod-legacy", "s", "1", "Legacy", EXPLICIT),
        ))
        chooser = Recorder()
        result = merge(existing, [discovered("s", {("1", "prod"): ["Admin", "ReadOnly"]})], chooser=chooser)
        assert chooser.selections == []
        assert result.profile("prod-admin").status is None
        assert result.profile("prod-legacy").status == RESELECT

    def test_new_account_named_like_kept_profile_is_prefixed(self):
        existing = ConfigDocument(profiles=(Profile("prod", "s", "1", "Admin", EXPLICIT),))
        accounts = {("1", "renamed"): ["Admin"], ("2", "prod"): ["Admin"]}
        result = merge(existing, [discovered("s", accounts)])
        assert {p.name: p.account_id for p in result.profiles} == {"prod": "1", "s-prod": "2"}

    def test_chosen_role_is_explicit(self):
        chooser = Recorder({"1": "ReadOnly"})
        result = merge(ConfigDocument(), [discovered("s", {("1", "one"): ["Admin", "ReadOnly"]})], chooser=chooser)
        assert result.profile("one").role_name == "ReadOnly"
        assert result.profile("one").provenance == EXPLICIT

    def test_accept_suggestions(self):
        accounts = {("1", "one"): ["Admin", "ReadOnly"], ("2", "two"): ["Admin", "ReadOnly"], ("3", "three"): ["Admin"]}
        result = merge(ConfigDocument(), [discovered("s", accounts)], chooser=AcceptSuggestions())
        assert {p.name: p.role_name for p in result.profiles} == {"one": "Admin", "two": "Admin", "three": "Admin"}

    def test_deferred_account_is_pending(self):
        result = merge(ConfigDocument(), [discovered("s", {("1", "one"): ["Admin", "ReadOnly"]})], chooser=DeferAll())
        profile = result.profile("one")
        assert profile.role_name is None
        assert profile.status == PENDING

    def test_vanished_role_is_marked_for_reselection(self):
        existing = ConfigDocument(profiles=(Profile("one", "s", "1", "Legacy", EXPLICIT),))
        chooser = Recorder()
        result = merge(existing, [discovered("s", {("1", "one"): ["Admin", "ReadOnly"]})], chooser=chooser)
        assert chooser.selections[0].previous_role == "Legacy"
        profile = result.profile("one")
        assert profile.status == RESELECT
        assert profile.role_name == "Legacy"

    def test_vanished_account_is_marked_for_reselection(self):
        existing = ConfigDocument(profiles=(
            Profile("gone", "s", "9", "Admin", AUTO),
            Profile("one", "s", "1", "Admin", AUTO),
        ))
        result = merge(existing, [discovered("s", {("1", "one"): ["Admin"]})])
        assert result.profile("gone").status == RESELECT
        assert result.profile("one").status is None

    def test_invalid_choice(self):
        with pytest.raises(ValueError):
            merge(ConfigDocument(), [discovered("s", {("1", "one"): ["Admin", "ReadOnly"]})], chooser=Recorder({"1": "Root"}))

    def test_single_role_keeps_explicit_provenance(self):
        existing = ConfigDocument(profiles=(Profile("one", "s", "1", "Admin", EXPLICIT),))
        result = merge(existing, [discovered("s", {("1", "one"): ["Admin"]})])
        assert result.profile("one").provenance == EXPLICIT


class TestProperties:
    def accounts(self):
        return {
            ("111111111111", "Production"): ["Admin", "ReadOnly"],
            ("222222222222", "Staging"): ["Admin"],
            ("333333333333", "Sandbox"): ["Admin", "PowerUser", "ReadOnly"],
            ("444444444444", "Logs"): ["ReadOnly"],
        }

    def test_one_profile_per_account(self):
        apps = [discovered("main", self.accounts()), discovered("other", {("555555555555", "Production"): ["Admin"]})]
        result = merge(ConfigDocument(), apps, chooser=Recorder({"111111111111": "ReadOnly"}))
        keys = [(p.session, p.account_id) for p in result.profiles]
        assert len(keys) == len(set(keys)) == 5
        assert len({p.name for p in result.profiles}) == 5

    @pytest.mark.parametrize("chooser", [DeferAll(), AcceptSuggestions()])
    def test_idempotent(self, chooser):
        existing = ConfigDocument.parse(
            "[default]\nregion = us-east-1\noutput = json\n\n"
            "[profile hand-made]\nregion = eu-west-1\n"
        )
        apps = [discovered("main", self.accounts()), discovered("other", {("555555555555", "Production"): ["Admin"]})]
        first = merge(existing, apps, chooser=chooser).render()
        second = merge(ConfigDocument.parse(first), apps, chooser=DeferAll()).render()
        assert first == second
        assert "[default]\nregion = us-east-1\noutput = json\n" in first

    def test_order_independent_of_discovery_order(self):
        apps = [discovered("main", self.accounts()), discovered("other", {("555555555555", "Production"): ["Admin"]})]
        forward = merge(ConfigDocument(), apps).render()
        backward = merge(ConfigDocument(), list(reversed(apps))).render()
        assert forward == backward


class TestSuggestionPolicy:
    def test_tie_break_by_name(self):
        policy = SuggestionPolicy()
        assert policy.suggest(["Zed", "Admin"], Counter(), Counter({"Zed": 1, "Admin": 1})) == "Admin"

    def test_available_basis(self):
        policy = SuggestionPolicy(basis="available")
        resolved = Counter({"ReadOnly": 3})
        available = Counter({"ReadOnly": 3, "Admin": 5})
        assert policy.suggest(["Admin", "ReadOnly"], resolved, available) == "Admin"
        assert SuggestionPolicy().suggest(["Admin", "ReadOnly"], resolved, available) == "ReadOnly"

    def test_min_share(self):
        resolved = Counter({"Admin": 2, "ReadOnly": 2, "Billing": 1})
        assert SuggestionPolicy(min_share=0.5).suggest(["Admin", "ReadOnly"], resolved, Counter()) is None
        assert SuggestionPolicy(min_share=0.4).suggest(["Admin", "ReadOnly"], resolved, Counter()) == "Admin"

    def test_invalid_basis(self):
        with pytest.raises(ConfigError):
            SuggestionPolicy(basis="random")


def test_summarize():
    before = ConfigDocument(profiles=(Profile("one", "s", "1", "Admin", AUTO),))
    after = merge(before, [discovered("s", {("1", "one"): ["Admin"], ("2", "two"): ["Admin", "ReadOnly"]})])
    assert summarize(before, after) == [("two", PENDING)]
    after = merge(before, [discovered("s", {("1", "one"): ["Admin"], ("3", "three"): ["Admin"]})])
    assert summarize(before, after) == [("three", "new")]
    assert summarize(after, after) == []
