from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone

from syncbridge.integrations.services.increase import compute_signature, parse_signature, signature_responder
from syncbridge.integrations.webhook import (
    AlwaysAccept,
    HmacSignature,
    SharedSecretHeader,
    WebhookRequest,
    WebhookResponse,
)
from syncbridge.tests.utils.factories import make_context, make_organization, make_sint


def _message(response: WebhookResponse) -> str:
    return json.loads(response.body)["message"]


def test_always_accept() -> None:
    response = AlwaysAccept().authenticate(WebhookRequest(body=b"{}"), "")
    assert response.status == 202
    assert response.body == '{"o":"k"}'


def test_shared_secret_header_distinguishes_missing_and_invalid() -> None:
    auth = SharedSecretHeader(header="Authorization")
    missing = auth.authenticate(WebhookRequest(body=b"{}"), "secret")
    invalid = auth.authenticate(WebhookRequest(body=b"{}", headers={"Authorization": "nope"}), "secret")
    valid = auth.authenticate(WebhookRequest(body=b"{}", headers={"authorization": "secret"}), "secret")
    assert (missing.status, _message(missing)) == (401, "missing auth header")
    assert (invalid.status, _message(invalid)) == (401, "invalid auth header")
    assert valid.status == 202


def test_shared_secret_rejects_when_no_secret_is_stored() -> None:
    auth = SharedSecretHeader(header="Authorization")
    response = auth.authenticate(WebhookRequest(body=b"{}", headers={"Authorization": ""}), "")
    assert response.status == 401


def test_hmac_signature_over_raw_body() -> None:
    body = b'{"id": 1}'
    digest = base64.b64encode(hmac.new(b"shh", body, hashlib.sha256).digest()).decode()
    auth = HmacSignature(header="X-Shopify-Hmac-SHA256", encoding="base64")

    ok = auth.authenticate(WebhookRequest(body=body, headers={"X-Shopify-Hmac-SHA256": digest}), "shh")
    tampered = auth.authenticate(
        WebhookRequest(body=b'{"id": 2}', headers={"X-Shopify-Hmac-SHA256": digest}), "shh"
    )
    missing = auth.authenticate(WebhookRequest(body=body), "shh")

    assert ok.status == 200
    assert (tampered.status, _message(tampered)) == (401, "invalid hmac")
    assert (missing.status, _message(missing)) == (401, "missing hmac")


def test_fake_integration_requires_prefixed_signature() -> None:
    context = make_context()
    sint = make_sint(make_organization(), "fake_v1", webhook_secret="topsecret")
    integration = context.integration_for(sint)
    body = b'{"my_id": "a"}'
    signature = hmac.new(b"topsecret", body, hashlib.sha256).hexdigest()

    accepted = integration.webhook_response(
        WebhookRequest(body=body, headers={"X-Fake-Signature": f"sha256={signature}"})
    )
    unprefixed = integration.webhook_response(WebhookRequest(body=body, headers={"X-Fake-Signature": signature}))

    assert accepted.status == 202
    assert unprefixed.status == 401


def test_increase_signature_window_and_messages() -> None:
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    respond = signature_responder(lambda: now)
    body = b'{"id": "transaction_1"}'

    def header_for(t: datetime, secret: str = "wh-secret") -> dict[str, str]:
        stamp = t.strftime("%Y-%m-%dT%H:%M:%SZ")
        return {"Increase-Webhook-Signature": f"t={stamp},v1={compute_signature(secret, body, t)}"}

    def message(headers: dict[str, str]) -> str:
        return _message(respond(WebhookRequest(body=body, headers=headers), "wh-secret"))

    assert respond(WebhookRequest(body=body, headers=header_for(now)), "wh-secret").status == 202
    assert message({}) == "missing header"
    assert message({"Increase-Webhook-Signature": "v1=abc"}) == "missing timestamp"
    assert message({"Increase-Webhook-Signature": "t=2024-05-01T12:00:00Z"}) == "missing signatures"
    assert message(header_for(now - timedelta(days=36))) == "too old"
    assert message(header_for(now + timedelta(days=5))) == "too new"
    assert message(header_for(now, secret="other")) == "invalid signature"


def test_parse_signature_collects_rotated_signatures() -> None:
    parsed = parse_signature("t=2024-05-01T12:00:00Z,v1=aaa,v1=bbb")
    assert parsed.t == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert parsed.v1 == ["aaa", "bbb"]
    assert parse_signature("t=garbage,v1=aaa").t is None
