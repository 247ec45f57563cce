import re

import pytest

import auth_utils
import config
import elevate_user
import models


def register(client, email="nia@library.org", password="secret123"):
    return client.post('/auth/register', json={
        "email": email, "password": password, "first_name": "Nia", "last_name": "Reader",
    })


def test_register_creates_member(client):
    resp = register(client)
    assert resp.status_code == 201
    body = resp.json()
    assert body['user']['role'] == 'member'
    assert body['token_type'] == 'bearer'

    me = client.get('/auth/me', headers={"Authorization": f"Bearer {body['access_token']}"})
    assert me.status_code == 200
    assert me.json()['email'] == "nia@library.org"


def test_register_duplicate_email(client):
    register(client)
    resp = register(client)
    assert resp.status_code == 409


def test_register_domain_restriction(client, monkeypatch):
    monkeypatch.setattr(config, "ALLOWED_EMAIL_DOMAIN", "@school.edu")
    resp = register(client)
    assert resp.status_code == 400
    assert "school.edu" in resp.json()['detail']


def test_login(client, member):
    resp = client.post('/auth/login', json={"email": member.email, "password": "secret123"})
    assert resp.status_code == 200
    assert resp.json()['user']['id'] == member.id


def test_login_wrong_password(client, member):
    resp = client.post('/auth/login', json={"email": member.email, "password": "wrong-pass"})
    assert resp.status_code == 401


def test_me_requires_token(client):
    assert client.get('/auth/me').status_code == 401


def test_forgot_and_reset_password(client, member, sent_emails):
    resp = client.post('/auth/forgot-password', json={"email": member.email})
    assert resp.status_code == 200
    assert len(sent_emails) == 1
    assert sent_emails[0]['to'] == member.email

    token = re.search(r'reset-password/([\w\-.]+)', sent_emails[0]['html']).group(1)

    # a reset token is not an access token
    assert client.get('/auth/me', headers={"Authorization": f"Bearer {token}"}).status_code == 401

    resp = client.post('/auth/reset-password', json={"token": token, "new_password": "brand-new-pw"})
    assert resp.status_code == 200

    assert client.post('/auth/login', json={"email": member.email, "password": "secret123"}).status_code == 401
    assert client.post('/auth/login', json={"email": member.email, "password": "brand-new-pw"}).status_code == 200

    # single use
    resp = client.post('/auth/reset-password', json={"token": token, "new_password": "another-pw"})
    assert resp.status_code == 400


def test_reset_password_rejects_access_token(client, member):
    token = auth_utils.token_for_user(member)
    resp = client.post('/auth/reset-password', json={"token": token, "new_password": "brand-new-pw"})
    assert resp.status_code == 400


def test_forgot_password_unknown_email(client, sent_emails):
    resp = client.post('/auth/forgot-password', json={"email": "ghost@library.org"})
    assert resp.status_code == 404
    assert sent_emails == []


def test_forgot_password_reports_email_failure(client, member):
    # SMTP is not configured in tests
    resp = client.post('/auth/forgot-password', json={"email": member.email})
    assert resp.status_code == 500
    assert "password reset email" in resp.json()['detail']


@pytest.mark.parametrize("role,status", [("member", 403), ("librarian", 200), ("admin", 200)])
def test_admin_user_listing_roles(client, make_user, headers, role, status):
    user = make_user(f"{role}@library.org", role=role)
    assert client.get('/admin/users', headers=headers(user)).status_code == status


def test_admin_changes_role(client, admin, member, headers):
    resp = client.patch(f'/admin/users/{member.id}', json={"role": "librarian"}, headers=headers(admin))
    assert resp.status_code == 200
    assert resp.json()['role'] == 'librarian'

    # role is read from the database, so the old token now carries librarian rights
    assert client.get('/admin/users', headers=headers(member)).status_code == 200


def test_admin_cannot_delete_self(client, admin, headers):
    assert client.delete(f'/admin/users/{admin.id}', headers=headers(admin)).status_code == 400


def test_admin_deletes_user_without_borrows(client, db, admin, member, headers):
    member_id = member.id
    assert client.delete(f'/admin/users/{member_id}', headers=headers(admin)).status_code == 204
    db.expunge_all()
    assert db.get(models.User, member_id) is None


def test_admin_cannot_delete_user_with_borrows(client, admin, member, make_book, make_borrow, headers):
    make_borrow(member, make_book(quantity=1, available=0))
    assert client.delete(f'/admin/users/{member.id}', headers=headers(admin)).status_code == 409


def test_elevate_user_script(db, member):
    assert elevate_user.run(member.email, "librarian") == 0
    db.expire_all()
    assert db.get(models.User, member.id).role == "librarian"

    assert elevate_user.run(member.email, "superuser") == 1
    assert elevate_user.run("nobody@library.org") == 1
