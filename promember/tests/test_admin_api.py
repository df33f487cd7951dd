"""Admin routes: hybrid auth, manual edits and diagnostics summaries."""
ADMIN_KEY = "test-admin-key"

LEGACY = {"X-Admin-Key": ADMIN_KEY}


def test_legacy_key_reads_stats(client, services):
    services.store.merge("m1", member=True, subscription_type="Monthly")
    services.store.merge("l1", member=True, subscription_type="Lifetime")

    response = client.get("/admin/memberships/stats", headers=LEGACY)

    assert response.status_code == 200
    assert response.json()["total_members"] == 2
    assert response.json()["monthly_members"] == 1


def test_wrong_legacy_key_is_forbidden(client):
    response = client.get("/admin/memberships/stats", headers={"X-Admin-Key": "nope"})

    assert response.status_code == 403


def test_missing_credentials_are_unauthenticated(client):
    response = client.get("/admin/memberships/stats")

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "admin_unauthorized"


def test_legacy_key_blocked_in_production_hybrid_mode(client, services, test_settings):
    services.settings = test_settings.model_copy(update={"ENVIRONMENT": "prod"})

    response = client.get("/admin/memberships/stats", headers=LEGACY)

    assert response.status_code == 401


def test_clerk_admin_token_is_accepted(client, make_token):
    token = make_token("admin_user", role="admin")

    response = client.get("/admin/error-logs/summary", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json()["entries"] == 0


def test_clerk_non_admin_token_is_forbidden(client, make_token):
    response = client.get(
        "/admin/memberships/stats",
        headers={"Authorization": f"Bearer {make_token('user_1')}"},
    )

    assert response.status_code == 403


def test_unconfigured_admin_auth_is_503(client, services, test_settings):
    services.settings = test_settings.model_copy(update={"ADMIN_KEY": None, "CLERK_SECRET_KEY": None})

    response = client.get("/admin/memberships/stats", headers=LEGACY)

    assert response.status_code == 503


def test_manual_edit_resyncs_claims(client, services, fake_identity):
    services.store.merge("user_1", member=True, subscription_type="Monthly", subscription_id="sub_1")

    response = client.patch(
        "/admin/memberships/user_1",
        json={"subscription_type": "Lifetime"},
        headers=LEGACY,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["membership"]["subscription_type"] == "Lifetime"
    assert body["claims"] == {"member": True, "proStatus": "Lifetime", "isAdmin": False}
    assert body["manual_claim_sync_required"] is False
    assert fake_identity.claims_for("user_1").pro_status.value == "Lifetime"


def test_manual_edit_sets_cancel_at(client, services, fake_identity):
    services.store.merge("user_1", member=True, subscription_type="Monthly")

    response = client.patch(
        "/admin/memberships/user_1",
        json={"cancel_at": "2030-01-01T00:00:00Z"},
        headers=LEGACY,
    )

    assert response.status_code == 200
    assert response.json()["membership"]["cancel_at"].startswith("2030-01-01T00:00:00")
    assert fake_identity.metadata["user_1"]["expires"] == 1893456000


def test_manual_edit_errors(client, services):
    services.store.merge("user_1", member=True, subscription_type="Monthly")

    missing = client.patch("/admin/memberships/ghost", json={"member": True}, headers=LEGACY)
    bad_type = client.patch("/admin/memberships/user_1", json={"subscription_type": "Weekly"}, headers=LEGACY)

    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "membership_not_found"
    assert bad_type.status_code == 400


def test_manual_edit_rejects_member_without_plan(client, services):
    services.store.merge("user_1", customer_id="cus_1")

    response = client.patch("/admin/memberships/user_1", json={"member": True}, headers=LEGACY)

    assert response.status_code == 400
    assert services.store.get("user_1").member is False


def test_manual_plan_edit_grants_membership(client, services, fake_identity):
    services.store.merge("user_1", customer_id="cus_1")

    response = client.patch("/admin/memberships/user_1", json={"subscription_type": "Lifetime"}, headers=LEGACY)

    assert response.status_code == 200
    body = response.json()
    assert body["membership"]["member"] is True
    assert body["membership"]["status"] == "active"
    assert body["claims"] == {"member": True, "proStatus": "Lifetime", "isAdmin": False}


def test_manual_edit_claims_failure_stays_flagged(client, services, fake_identity):
    services.store.merge("user_1", member=True, subscription_type="Monthly")
    fake_identity.fail_writes = True

    response = client.patch("/admin/memberships/user_1", json={"subscription_type": "Lifetime"}, headers=LEGACY)

    assert response.status_code == 200
    assert response.json()["manual_claim_sync_required"] is True


def test_diagnostics_summaries(client, services):
    services.error_log.capture("start_checkout", "declined")
    services.rate_limit_log.record_rejection("public_read", "1.2.3.4", qualifier_kind="ip", ip="1.2.3.4")

    errors = client.get("/admin/error-logs/summary", headers=LEGACY).json()
    rejections = client.get("/admin/rate-limit-logs/summary", headers=LEGACY).json()

    assert errors["entries"] == 1
    assert rejections == {"total": 1, "by_limiter": {"public_read": 1}, "unique_ips": 1, "unique_users": 0}
