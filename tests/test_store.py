import json

import pytest

from slack_sms.db import TenantDocument
from slack_sms.errors import ConfigurationError, Conflict, NotFound
from slack_sms.install import complete_install
from slack_sms.models import ChatCredentials
from slack_sms.store import TenantStore, new_revision


def test_new_revision_increments_generation():
    first = new_revision()
    second = new_revision(first)

    assert first.startswith("1-")
    assert second.startswith("2-")
    assert first != new_revision()


def test_upsert_creates_tenant_once(store):
    first = complete_install(store, "T1", "xoxp-1", "xoxb-1", "UBOT")
    again = complete_install(store, "T1", "xoxp-1", "xoxb-1", "UBOT")

    assert again.id == first.id
    # identical credentials write nothing
    assert again.revision == first.revision
    assert [t.team for t in store.list_tenants()] == ["T1"]


def test_reinstall_keeps_subscriptions_and_carrier(store, provisioned):
    store.update(provisioned, lambda t: t.add_subscriber("U1", "C1"))
    before = store.find_by_team(provisioned)

    after = complete_install(store, provisioned, "xoxp-new", "xoxb-new", "UBOT2")

    assert after.id == before.id
    assert after.revision != before.revision
    assert after.chat == ChatCredentials(
        user_access_token="xoxp-new", bot_access_token="xoxb-new", bot_user_id="UBOT2"
    )
    assert after.recipients("C1") == {"U1"}
    assert after.carrier == before.carrier
    assert after.phone_number == before.phone_number


def test_save_rejects_stale_revision(store, installed):
    mine = store.find_by_team(installed)
    theirs = store.find_by_team(installed)

    theirs.add_subscriber("U2", "C1")
    store.save(theirs)

    mine.add_subscriber("U1", "C1")
    with pytest.raises(Conflict):
        store.save(mine)

    stored = store.find_by_team(installed)
    assert stored.recipients("C1") == {"U2"}


def test_save_returns_copy_with_new_revision(store, installed):
    tenant = store.find_by_team(installed)
    tenant.add_subscriber("U1", "C1")

    saved = store.save(tenant)

    assert saved.revision != tenant.revision
    assert store.find_by_team(installed).revision == saved.revision


def test_update_unknown_team(store):
    with pytest.raises(NotFound):
        store.update("T404", lambda t: True)


def test_update_without_change_does_not_write(store, installed):
    before = store.find_by_team(installed)

    result = store.update(installed, lambda t: False)

    assert result.revision == before.revision


def test_lookups(store, provisioned):
    tenant = store.find_by_team(provisioned)

    assert store.get(tenant.id).team == provisioned
    assert store.find_by_carrier_account("AC123").team == provisioned
    assert store.find_by_carrier_account("AC999") is None
    assert store.find_by_carrier_account("") is None
    assert store.find_by_phone("+1 (555) 123-0000").team == provisioned
    assert store.find_by_phone("15551230000").team == provisioned
    assert store.find_by_phone("") is None
    assert store.find_by_team("T404") is None


def test_phone_number_belongs_to_one_team(store, provisioned):
    complete_install(store, "T2", "xoxp-2", "xoxb-2", "UBOT")

    with pytest.raises(ConfigurationError):
        store.provision_carrier("T2", "AC456", "secret", "+1 555 123 0000")


def test_carrier_account_belongs_to_one_team(store, provisioned):
    complete_install(store, "T2", "xoxp-2", "xoxb-2", "UBOT")

    with pytest.raises(ConfigurationError) as exc:
        store.provision_carrier("T2", "AC123", "twilio-secret", "+15559870000")

    assert exc.value.context == {"carrier_account": "AC123", "team": "T1"}
    assert store.find_by_carrier_account("AC123").team == "T1"
    assert store.find_by_team("T2").carrier is None


def test_shared_carrier_account_is_ambiguous(store, provisioned, session_factory):
    complete_install(store, "T2", "xoxp-2", "xoxb-2", "UBOT")
    with session_factory() as db:
        row = db.get(TenantDocument, store.find_by_team("T2").id)
        row.carrier_account_id = "AC123"
        db.commit()

    with pytest.raises(ConfigurationError):
        store.find_by_carrier_account("AC123")


def test_provision_is_idempotent(store, provisioned):
    before = store.find_by_team(provisioned)

    after = store.provision_carrier(provisioned, "AC123", "twilio-secret", "+15551230000")

    assert after.revision == before.revision


def test_invalid_document_is_reported(store, session_factory):
    with session_factory() as db:
        db.add(TenantDocument(id="broken", revision="1-x", team="T9", body=json.dumps([1, 2])))
        db.commit()

    with pytest.raises(ConfigurationError) as exc:
        store.find_by_team("T9")
    assert exc.value.context["team"] == "T9"


def test_stored_channels_are_sorted_lists(store, installed, session_factory):
    def add_two(tenant):
        return tenant.add_subscriber("U2", "C1") and tenant.add_subscriber("U1", "C1")

    store.update(installed, add_two)

    with session_factory() as db:
        row = db.get(TenantDocument, store.find_by_team(installed).id)
        body = json.loads(row.body)

    assert body["channels"] == {"C1": ["U1", "U2"]}
    assert "revision" not in body


class RacingStore(TenantStore):
    """Lets another writer commit between our read and our write."""

    def __init__(self, *args, competitor, **kwargs):
        super().__init__(*args, **kwargs)
        self.competitor = competitor
        self.reads = 0

    def find_by_team(self, team):
        tenant = super().find_by_team(team)
        self.reads += 1
        self.competitor(self.reads)
        return tenant


def test_update_gives_up_after_retries(store, installed, session_factory):
    racing = RacingStore(
        session_factory,
        max_conflict_retries=2,
        competitor=lambda n: store.update(installed, lambda t: t.add_subscriber(f"U{n}", "C9")),
    )

    with pytest.raises(Conflict):
        racing.update(installed, lambda t: t.add_subscriber("ME", "C1"))

    assert racing.reads == 3
    assert not store.find_by_team(installed).has_channel("C1")
