"""Route tests for the admin bucket and capability endpoints."""

from stowage.vault import UPLOAD_SCOPE

from conftest import ADMIN, make_draft


def _registration(**overrides) -> dict:
    body = {
        "name": "assets",
        "region": "auto",
        "endpoint": "https://account.r2.example.com",
        "provider": "r2",
        "totalCapacityGb": 10,
        "accessKey": "AKIANEW",
        "secretKey": "secret-value",
        "isPrivate": True,
    }
    body.update(overrides)
    return body


class TestAdminAuth:
    """Bearer token checks on admin routes."""

    async def test_missing_token(self, client):
        resp = await client.get("/buckets")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "Unauthorized"

    async def test_wrong_token(self, client):
        resp = await client.get("/buckets", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 403

    async def test_wrong_scheme(self, client):
        resp = await client.get("/buckets", headers={"Authorization": "Basic test-admin-token"})
        assert resp.status_code == 403

    async def test_capability_token_is_not_admin(self, client, upload_headers):
        token = upload_headers["x-access-token"]
        resp = await client.get("/buckets", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 403


class TestRegister:
    """POST /buckets and GET /buckets."""

    async def test_register_and_list(self, client, admin_headers, provider):
        resp = await client.post("/buckets", json=_registration(), headers=admin_headers)
        assert resp.status_code == 201
        body = resp.json()
        assert body["name"] == "assets"
        assert body["isPrivate"] is True
        assert body["totalCapacityGb"] == 10
        assert not any("secret" in key.lower() or "access" in key.lower() for key in body)
        assert provider.operations() == ["head_bucket"]

        listed = (await client.get("/buckets", headers=admin_headers)).json()
        assert [b["name"] for b in listed] == ["assets"]

    async def test_validation_errors(self, client, admin_headers, provider):
        resp = await client.post(
            "/buckets",
            json=_registration(name="x", endpoint="ftp://nowhere", accessKey=""),
            headers=admin_headers,
        )
        assert resp.status_code == 422
        fields = resp.json()["error"]["fields"]
        assert set(fields) == {"name", "endpoint", "accessKey"}
        assert provider.calls == []

    async def test_failed_probe(self, client, app, admin_headers, provider):
        provider.valid_keys = {"SOMEONE-ELSE"}
        resp = await client.post("/buckets", json=_registration(), headers=admin_headers)
        assert resp.status_code == 502
        assert resp.json()["error"]["code"] == "ConnectionVerificationError"
        assert await app.state.registry.list_buckets() == []

    async def test_body_must_be_object(self, client, admin_headers):
        resp = await client.post("/buckets", json=["a"], headers=admin_headers)
        assert resp.status_code == 422


class TestRotate:
    """POST /buckets/{id}/rotate."""

    async def test_rotate(self, client, app, bucket, admin_headers):
        resp = await client.post(
            f"/buckets/{bucket.id}/rotate",
            json={"accessKey": "AKIAROTATED", "secretKey": "new"},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        stored = await app.state.registry.require(bucket.id)
        assert app.state.vault.decrypt_secret(stored.access_key_encrypted) == "AKIAROTATED"

    async def test_rotate_unknown(self, client, admin_headers):
        resp = await client.post(
            "/buckets/999/rotate",
            json={"accessKey": "a", "secretKey": "b"},
            headers=admin_headers,
        )
        assert resp.status_code == 404

    async def test_rotate_missing_keys(self, client, bucket, admin_headers):
        resp = await client.post(f"/buckets/{bucket.id}/rotate", json={}, headers=admin_headers)
        assert resp.status_code == 422
        assert set(resp.json()["error"]["fields"]) == {"accessKey", "secretKey"}


class TestUsage:
    """POST /buckets/usage/refresh."""

    async def test_refresh_selected(self, client, bucket, admin_headers, provider):
        provider.objects["media-bucket"] = {"a": 1024, "b": 1024}
        resp = await client.post(
            "/buckets/usage/refresh",
            json={"bucketIds": [bucket.id, 404]},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        first, second = resp.json()
        assert first["status"] == "Success"
        assert first["storageUsedBytes"] == 2048
        assert first["totalCapacityGB"] == 25
        assert first["availableCapacityGB"] == "25.00 GB"
        assert second == {
            "bucketId": 404,
            "status": "NotFound",
            "message": "Bucket configuration not found.",
        }

    async def test_empty_list_refreshes_all(self, client, app, admin_headers):
        await app.state.registry.register_bucket(make_draft(name="one"), authorization=ADMIN)
        await app.state.registry.register_bucket(make_draft(name="two"), authorization=ADMIN)
        resp = await client.post(
            "/buckets/usage/refresh", json={"bucketIds": []}, headers=admin_headers
        )
        assert [s["name"] for s in resp.json()] == ["one", "two"]

    async def test_bad_ids(self, client, admin_headers):
        resp = await client.post(
            "/buckets/usage/refresh", json={"bucketIds": ["1"]}, headers=admin_headers
        )
        assert resp.status_code == 422
        assert "bucketIds" in resp.json()["error"]["fields"]


class TestConnections:
    """POST /buckets/test."""

    async def test_mixed_results(self, client, bucket, admin_headers):
        resp = await client.post(
            "/buckets/test", json={"bucketIds": [bucket.id, 55]}, headers=admin_headers
        )
        assert resp.status_code == 200
        assert [r["status"] for r in resp.json()] == ["Success", "Error"]
        assert resp.json()[1]["name"] == "N/A"


class TestCapabilities:
    """POST /capabilities."""

    async def test_issue(self, client, app, bucket, admin_headers):
        resp = await client.post(
            "/capabilities", json={"bucketId": bucket.id}, headers=admin_headers
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["expiresIn"] == app.state.vault.capability_ttl

        claims = app.state.vault.verify_capability(
            body["token"], bucket_id=bucket.id, scope=UPLOAD_SCOPE
        )
        assert claims["sub"].startswith("admin-")

    async def test_issued_token_opens_file_routes(self, client, bucket, admin_headers):
        token = (
            await client.post("/capabilities", json={"bucketId": str(bucket.id)}, headers=admin_headers)
        ).json()["token"]
        resp = await client.post(
            f"/files/presign?bucketId={bucket.id}",
            json={"fileName": "a.txt"},
            headers={"x-access-token": token},
        )
        assert resp.status_code == 200

    async def test_unknown_bucket(self, client, admin_headers):
        resp = await client.post("/capabilities", json={"bucketId": 404}, headers=admin_headers)
        assert resp.status_code == 404

    async def test_bad_bucket_id(self, client, admin_headers):
        resp = await client.post("/capabilities", json={"bucketId": "abc"}, headers=admin_headers)
        assert resp.status_code == 422
