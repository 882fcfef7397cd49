import threading
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
import stripe

from backend.app_server import create_app
from conftest import PRODUCT_URL, FakeBrowserClient, FakeVerifier
from marketplace.gumroad_browser import PublishResult
from marketplace.payment_processor import CheckoutService
from marketplace.utils import StorageError

TOKEN = "s3cret"


@pytest.fixture
def browser():
    return FakeBrowserClient()


@pytest.fixture
def make_app(config, store, policy, browser):
    def _make(verifier=None, checkout=None, validator=lambda url: True, **overrides):
        app = create_app(
            config.with_overrides(**overrides),
            store=store,
            verifier=verifier,
            checkout=checkout,
            browser_client=browser,
            validator=validator,
            policy=policy,
        )
        app.testing = True
        return app

    return _make


@pytest.fixture
def client(make_app):
    return make_app().test_client()


def test_health(client):
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.get_json()["ok"] is True
    assert resp.headers["Access-Control-Allow-Origin"] == "*"


def test_options_preflight(client):
    resp = client.open("/api/gumroad/publish", method="OPTIONS")

    assert resp.status_code == 204
    assert "POST" in resp.headers["Access-Control-Allow-Methods"]


def test_config_reports_disabled_integrations(client):
    body = client.get("/api/config").get_json()

    assert body["stripe"] == {"configured": False, "mode": "test"}
    assert body["ai_verification"]["configured"] is False
    assert body["offerwall"]["token_required"] is False


class TestOfferwallCallback:
    def test_get_query_string(self, client, store, make_project):
        project = make_project(price=20)

        resp = client.get(f"/api/offerwall/callback?provider=cpx&uid=u1&tx=t1&subid={project['id']}&payout=12")

        assert resp.status_code == 200
        assert resp.get_json() == {"ok": True, "duplicated": False}
        assert store.get_project(project["id"])["funded_amount"] == 12

    def test_post_json_and_duplicate(self, client, store):
        payload = {"network": "adgate", "user_id": "u1", "transaction_id": "t-9", "amount": "3.5"}

        first = client.post("/api/offerwall/callback", json=payload)
        second = client.post("/api/offerwall/callback", json=payload)

        assert first.get_json() == {"ok": True, "duplicated": False}
        assert second.status_code == 200
        assert second.get_json() == {"ok": True, "duplicated": True}
        assert len(store.list_conversions(user_id="u1")) == 1

    def test_post_form(self, client, store):
        resp = client.post("/api/offerwall/callback", data={"user": "u2", "click_id": "c-1"})

        assert resp.status_code == 200
        assert store.get_conversion("unknown:c-1")["user_id"] == "u2"

    def test_body_overrides_query(self, client, store):
        client.post("/api/offerwall/callback?uid=from-query&tx=t1", json={"uid": "from-body"})

        assert store.get_conversion("unknown:t1")["user_id"] == "from-body"

    def test_missing_fields(self, client):
        resp = client.get("/api/offerwall/callback?uid=u1")

        assert resp.status_code == 400
        assert resp.get_json()["missing"] == ["transaction_id"]

    def test_text_format(self, client, store):
        ok = client.get("/api/offerwall/callback?uid=u1&tx=t1&format=text")
        bad = client.get("/api/offerwall/callback?format=text")

        assert ok.data == b"OK"
        assert ok.mimetype == "text/plain"
        assert bad.status_code == 400
        assert bad.data == b"ERROR"
        assert "format" not in store.get_conversion("unknown:t1")["raw_params"]

    def test_storage_failure_is_500(self, client, store):
        store.create_conversion_if_absent = Mock(side_effect=StorageError("db down", stage="test"))

        resp = client.get("/api/offerwall/callback?uid=u1&tx=t1")

        assert resp.status_code == 500
        assert resp.get_json()["ok"] is False

    @pytest.mark.parametrize(
        "path, headers",
        [
            (f"/api/offerwall/callback?uid=u1&tx=t1&token={TOKEN}", {}),
            ("/api/offerwall/callback?uid=u1&tx=t1", {"Authorization": f"Bearer {TOKEN}"}),
            ("/api/offerwall/callback?uid=u1&tx=t1", {"Authorization": TOKEN}),
        ],
    )
    def test_token_accepted(self, make_app, store, path, headers):
        client = make_app(offerwall_callback_token=TOKEN).test_client()

        assert client.get(path, headers=headers).status_code == 200
        assert "token" not in store.get_conversion("unknown:t1")["raw_params"]

    def test_token_checked_before_fields(self, make_app, store):
        client = make_app(offerwall_callback_token=TOKEN).test_client()

        resp = client.get("/api/offerwall/callback?token=wrong")

        assert resp.status_code == 401
        assert store.list_conversions() == []


class TestGumroadEndpoints:
    def test_publish_success(self, client, browser, make_project):
        project = make_project()

        resp = client.post("/api/gumroad/publish", json={"project_id": project["id"]})

        assert resp.status_code == 200
        assert resp.get_json()["product_url"] == PRODUCT_URL
        assert len(browser.calls) == 1

    def test_publish_requires_project_id(self, client):
        resp = client.post("/api/gumroad/publish", json={})

        assert resp.status_code == 400
        assert resp.get_json()["instructions"]

    @pytest.mark.parametrize("status, expected", [("pending", 400), (None, 404)])
    def test_publish_status_codes(self, client, make_project, status, expected):
        project_id = make_project(status=status)["id"] if status else "missing"

        assert client.post("/api/gumroad/publish", json={"project_id": project_id}).status_code == expected

    def test_publish_in_progress(self, client, store, make_project):
        project = make_project()
        store.acquire_lease(project["id"], ttl_seconds=60)

        assert client.post("/api/gumroad/publish", json={"project_id": project["id"]}).status_code == 409

    def test_automation_failure_is_502_with_instructions(self, make_app, browser, make_project):
        browser.result = PublishResult(
            success=False,
            message="Gumroad credentials not configured",
            error="missing_gumroad_credentials",
            stage="login",
            instructions=["Save your Gumroad email and password first"],
        )
        project = make_project()

        resp = make_app().test_client().post("/api/gumroad/publish", json={"project_id": project["id"]})

        assert resp.status_code == 502
        body = resp.get_json()
        assert body["error"] == "missing_gumroad_credentials"
        assert body["stage"] == "login"
        assert body["instructions"]

    def test_credentials_roundtrip(self, client):
        check = {"user_id": "user-1"}
        assert client.post("/api/gumroad/credentials/check", json=check).get_json() == {"has_credentials": False}

        resp = client.post(
            "/api/gumroad/credentials", json={"user_id": "user-1", "email": "a@b.c", "password": "pw"}
        )

        assert resp.status_code == 200
        assert client.post("/api/gumroad/credentials/check", json=check).get_json() == {"has_credentials": True}

    def test_credentials_require_all_fields(self, client):
        resp = client.post("/api/gumroad/credentials", json={"user_id": "user-1", "email": "a@b.c"})

        assert resp.status_code == 400
        assert resp.get_json()["error"] == "invalid_request"


class TestProjectEndpoints:
    FIELDS = {
        "user_id": "user-1",
        "title": "Intro pack",
        "description": "Ten 4K intros",
        "project_type": "Video",
        "price": 10,
        "google_drive_link": "https://drive.google.com/x",
    }

    def test_submit_list_get_delete(self, client):
        created = client.post("/api/projects", json=self.FIELDS)
        assert created.status_code == 201
        project_id = created.get_json()["project"]["id"]

        listed = client.get("/api/projects?user_id=user-1").get_json()["projects"]
        assert [p["id"] for p in listed] == [project_id]

        detail = client.get(f"/api/projects/{project_id}").get_json()
        assert detail["project"]["status"] == "pending"
        assert detail["funding"]["remaining"] == 10

        assert client.delete(f"/api/projects/{project_id}").status_code == 200
        assert client.get(f"/api/projects/{project_id}").status_code == 404

    def test_invalid_submission(self, client):
        resp = client.post("/api/projects", json=dict(self.FIELDS, price=-1))

        assert resp.status_code == 400

    def test_list_requires_user(self, client):
        assert client.get("/api/projects").status_code == 400

    def test_public_listing_of_approved_projects(self, client, make_project):
        approved = make_project(user_id="alice")
        make_project(status="pending", user_id="bob")

        resp = client.get("/api/projects?status=approved")

        assert resp.status_code == 200
        assert [p["id"] for p in resp.get_json()["projects"]] == [approved["id"]]

    def test_unknown_listing_status(self, client):
        assert client.get("/api/projects?status=archived").status_code == 400

    @pytest.mark.parametrize("funded, eligible", [(5, False), (20, True)])
    def test_detail_reports_publish_eligibility(self, client, store, make_project, funded, eligible):
        project = make_project(price=20)
        store.increment_funded_amount(project["id"], funded)

        funding = client.get(f"/api/projects/{project['id']}").get_json()["funding"]

        assert funding["publish_eligible"] is eligible

    def test_verify_disabled_without_key(self, client):
        assert client.post("/api/verify", json={"project_id": "p"}).status_code == 503

    def test_verify_approves_and_publishes(self, make_app, browser):
        client = make_app(verifier=FakeVerifier()).test_client()
        project_id = client.post("/api/projects", json=self.FIELDS).get_json()["project"]["id"]

        body = client.post("/api/verify", json={"project_id": project_id}).get_json()

        assert body["approved"] is True
        assert body["publish"]["product_url"] == PRODUCT_URL
        assert len(browser.calls) == 1

    def test_verify_twice_is_a_precondition_error(self, make_app):
        client = make_app(verifier=FakeVerifier(False, "too short")).test_client()
        project_id = client.post("/api/projects", json=self.FIELDS).get_json()["project"]["id"]

        assert client.post("/api/verify", json={"project_id": project_id}).get_json()["approved"] is False
        assert client.post("/api/verify", json={"project_id": project_id}).status_code == 400


class TestCheckoutEndpoint:
    def test_config_reports_checkout_mode(self, make_app, config, store, policy):
        checkout = CheckoutService(config.with_overrides(stripe_secret_key="sk_live_1"), store, policy)

        body = make_app(checkout=checkout).test_client().get("/api/config").get_json()

        assert body["stripe"] == {"configured": True, "mode": "live"}

    def test_disabled_without_key(self, client):
        assert client.post("/api/create-checkout", json={"project_id": "p"}).status_code == 503

    def test_creates_session(self, make_app, config, store, policy, make_project, monkeypatch):
        monkeypatch.setattr(
            stripe.checkout.Session, "create", Mock(return_value=SimpleNamespace(id="cs_1", url="https://pay.test/cs_1"))
        )
        checkout = CheckoutService(config.with_overrides(stripe_secret_key="sk_test_1"), store, policy)
        client = make_app(checkout=checkout).test_client()
        project = make_project()

        resp = client.post("/api/create-checkout", json={"project_id": project["id"]})

        assert resp.status_code == 200
        assert resp.get_json() == {"success": True, "url": "https://pay.test/cs_1", "session_id": "cs_1"}

    def test_unapproved_project(self, make_app, config, store, policy, make_project):
        checkout = CheckoutService(config.with_overrides(stripe_secret_key="sk_test_1"), store, policy)
        client = make_app(checkout=checkout).test_client()
        project = make_project(status="pending")

        assert client.post("/api/create-checkout", json={"project_id": project["id"]}).status_code == 400


def test_funding_unlock_publishes_in_background(make_app, browser, store, make_project):
    client = make_app(auto_publish_on_funded=True).test_client()
    project = make_project(price=10)

    client.get(f"/api/offerwall/callback?uid=u1&tx=t1&subid={project['id']}&payout=10")
    for thread in threading.enumerate():
        if thread.name == f"publish-{project['id']}":
            thread.join(timeout=5)

    assert len(browser.calls) == 1
    assert store.get_project(project["id"])["gumroad_link"] == PRODUCT_URL
