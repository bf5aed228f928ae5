"""
Shared fixtures: a moto-backed table and bucket, a seeded platform, tokens
and an HTTP client.
"""

import os
from datetime import timedelta
from unittest.mock import patch

import boto3
import pytest
from boto3.dynamodb.conditions import Attr
from fastapi.testclient import TestClient
from moto import mock_aws

from admin_plane.core.config import Settings
from admin_plane.core.database import Store
from admin_plane.core.security import create_access_token, get_password_hash
from admin_plane.core.timeutils import to_iso, utcnow
from admin_plane.main import create_app
from admin_plane.models.user import Role
from admin_plane.services import CommandContext, Services


TABLE_NAME = "admin-plane-test"
BUCKET = "admin-plane-backups"
REGION = "us-east-1"
JWT_SECRET = "unit-test-secret-0123456789"

PASSWORDS = {
    "u-root": "RootPass123!",
    "u-1": "StudentPass1!",
    "u-suspended": "Suspended1!",
}

# userId -> (name, email, role, status, created days ago)
USERS = {
    "u-root": ("Root Admin", "root@upskillpro.com", "super_admin", "active", 200),
    "u-admin": ("Ada Admin", "ada@upskillpro.com", "admin", "active", 100),
    "u-1": ("Sam Student", "sam@example.com", "student", "active", 5),
    "u-2": ("Ivy Instructor", "ivy@example.com", "instructor", "active", 40),
    "u-pending": ("Pat Pending", "pat@example.com", "student", "pending", 1),
    "u-suspended": ("Sid Suspended", "sid@upskillpro.com", "super_admin", "suspended", 300),
}

# courseId -> (title, status, price, created days ago)
COURSES = {
    "c-draft": ("Intro to Rust", "draft", 0, 2),
    "c-pending": ("Data Pipelines", "pending", 29.0, 10),
    "c-approved": ("Python Basics", "approved", 49.99, 45),
}


def seed_platform(store: Store) -> None:
    now = utcnow()
    for user_id, (name, email, role, status, age) in USERS.items():
        item = {
            "PK": f"USER#{user_id}",
            "SK": "PROFILE",
            "entityType": "User",
            "userId": user_id,
            "name": name,
            "email": email,
            "role": role,
            "accountStatus": status,
            "createdAt": to_iso(now - timedelta(days=age)),
            "loginCount": 0,
            "version": 1,
        }
        if user_id in PASSWORDS:
            item["password"] = get_password_hash(PASSWORDS[user_id])
        store.put(item)

    for course_id, (title, status, price, age) in COURSES.items():
        store.put({
            "PK": f"COURSE#{course_id}",
            "SK": "META",
            "entityType": "Course",
            "courseId": course_id,
            "title": title,
            "instructorId": "u-2",
            "status": status,
            "price": price,
            "createdAt": to_iso(now - timedelta(days=age)),
            "version": 1,
        })

    store.put({
        "PK": "USER#u-1",
        "SK": "ENROLL#c-approved",
        "entityType": "Enrollment",
        "courseId": "c-approved",
        "enrolledAt": to_iso(now - timedelta(days=3)),
        "paymentAmount": 49.99,
    })


@pytest.fixture
def mock_aws_credentials():
    """Mocked AWS Credentials for moto."""
    with patch.dict(os.environ, {
        "AWS_ACCESS_KEY_ID": "testing",
        "AWS_SECRET_ACCESS_KEY": "testing",
        "AWS_SECURITY_TOKEN": "testing",
        "AWS_SESSION_TOKEN": "testing",
        "AWS_DEFAULT_REGION": REGION,
    }):
        yield


@pytest.fixture
def settings():
    """Settings for an isolated test process."""
    return Settings(
        JWT_SECRET=JWT_SECRET,
        TABLE_NAME=TABLE_NAME,
        REGION=REGION,
        BUCKET=BUCKET,
        ENABLE_BACKGROUND_TASKS=False,
        LOG_JSON=False,
    )


@pytest.fixture
def aws(mock_aws_credentials):
    """Every AWS call inside the test goes to moto."""
    with mock_aws():
        yield


@pytest.fixture
def store(aws, settings):
    """The single table with its secondary indexes."""
    store = Store(settings.TABLE_NAME, settings.REGION)
    store.ensure_table()
    return store


@pytest.fixture
def s3(aws, settings):
    """S3 client with the backup bucket created."""
    client = boto3.client("s3", region_name=settings.REGION)
    client.create_bucket(Bucket=settings.BUCKET)
    return client


@pytest.fixture
def services(settings, store, s3):
    """Component graph over a seeded platform."""
    seed_platform(store)
    return Services(settings, store=store, s3=s3)


@pytest.fixture
def tokens(settings):
    """Bearer tokens keyed by seeded user id."""
    return {
        user_id: create_access_token(settings, user_id, Role(role), email, name)
        for user_id, (name, email, role, _, _) in USERS.items()
    }


@pytest.fixture
def root_ctx(services, tokens):
    """Command context for the active super admin."""
    principal = services.identity.verify(tokens["u-root"], Role.SUPER_ADMIN)
    return CommandContext(principal=principal, ip="10.0.0.1", user_agent="pytest")


@pytest.fixture
def audit_rows(store):
    """Callable returning every persisted audit row."""
    def rows(target_entity=None):
        condition = Attr("entityType").eq("AuditRecord")
        if target_entity:
            condition = condition & Attr("targetEntity").eq(target_entity)
        return list(store.scan_all(condition))
    return rows


@pytest.fixture
def client(settings, services):
    """HTTP client for the application."""
    return TestClient(create_app(settings, services))


@pytest.fixture
def auth(tokens):
    """Authorization headers keyed by seeded user id."""
    return {user_id: {"Authorization": f"Bearer {token}"} for user_id, token in tokens.items()}
