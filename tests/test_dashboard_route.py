"""
tests/test_dashboard_route.py -- Role gates on /dashboard, its sections and /settings.

Covers:
  - A signed-in user with no admin-type role gets 403, not a redirect
  - Section admins see exactly their own card
  - Each section accepts admin or its own section role and nothing else
  - Unknown sections are 404
  - /settings is admin-only
"""

from __future__ import annotations

import pytest

from conftest import login, make_user


def _sign_in(web, username: str, roles: tuple[str, ...]):
    client, identity, _ = web
    make_user(identity.store, username, "password123", roles=roles)
    login(client, username, "password123")
    return client


def test_plain_user_forbidden(web) -> None:
    client = _sign_in(web, "dashplain", ("user",))
    resp = client.get("/dashboard")
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"
    assert resp.json()["error"]["message"] == "Unauthorized"


def test_admin_sees_every_card(web) -> None:
    client = _sign_in(web, "dashadmin", ("admin", "user"))
    cards = client.get("/dashboard").json()["cards"]
    assert [c["section"] for c in cards] == [
        "php",
        "incidents",
        "id-requests",
        "car-pass-requests",
        "access-requests",
    ]


def test_section_admin_sees_own_card(web) -> None:
    client = _sign_in(web, "dashphp", ("phpAdmin", "user"))
    cards = client.get("/dashboard").json()["cards"]
    assert cards == [{"section": "php", "title": "PHP", "link": "/dashboard/php"}]


@pytest.mark.parametrize(
    "role, allowed, denied",
    [
        ("phpAdmin", "php", "car-pass-requests"),
        ("carPassAdmin", "car-pass-requests", "php"),
        ("incidentAdmin", "incidents", "id-requests"),
        ("idRequestAdmin", "id-requests", "access-requests"),
        ("accessRequestAdmin", "access-requests", "incidents"),
    ],
)
def test_section_gates(web, role: str, allowed: str, denied: str) -> None:
    client = _sign_in(web, f"sec{role.lower()}"[:20], (role,))
    assert client.get(f"/dashboard/{allowed}").status_code == 200
    assert client.get(f"/dashboard/{denied}").status_code == 403


def test_admin_opens_any_section(web) -> None:
    client = _sign_in(web, "dashadmin2", ("admin",))
    for section in ("php", "incidents", "id-requests", "car-pass-requests", "access-requests"):
        assert client.get(f"/dashboard/{section}").status_code == 200


def test_unknown_section_404(web) -> None:
    client = _sign_in(web, "dashunknown", ("admin",))
    assert client.get("/dashboard/payroll").status_code == 404


def test_settings_admin_only(web) -> None:
    client = _sign_in(web, "dashsettings", ("phpAdmin",))
    assert client.get("/settings").status_code == 403

    client.cookies.clear()
    client = _sign_in(web, "dashsettingsadm", ("admin",))
    roles = {r["name"] for r in client.get("/settings").json()["roles"]}
    assert {"admin", "user", "phpAdmin"} <= roles
