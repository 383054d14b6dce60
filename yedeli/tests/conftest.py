"""
测试配置文件
提供测试所需的fixtures和配置
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from yedeli.app import create_app
from yedeli.core.database import DatabaseManager
from yedeli.core.security import Identity, Role, security_manager
from yedeli.models.catalog import CuisineType
from yedeli.services import build_services
from yedeli.utils.time import utcnow


@pytest.fixture
def test_db():
    """内存测试数据库"""
    db = DatabaseManager(":memory:")
    db.init_database()
    yield db
    db.close()


@pytest.fixture
def services(test_db):
    return build_services(test_db)


@pytest.fixture
def cook():
    return Identity(user_id="cook-1", role=Role.COOK)


@pytest.fixture
def other_cook():
    return Identity(user_id="cook-2", role=Role.COOK)


@pytest.fixture
def buyer():
    return Identity(user_id="buyer-1", role=Role.BUYER)


@pytest.fixture
def other_buyer():
    return Identity(user_id="buyer-2", role=Role.BUYER)


@pytest.fixture
def admin():
    return Identity(user_id="admin-1", role=Role.ADMIN)


def make_dish(services, cook, price="12.50"):
    return services.catalog.create_dish(cook, "红烧肉", Decimal(price), CuisineType.CHINESE, "每周三限量")


def make_batch(services, cook, dish=None, capacity=20, current_orders=0,
               cutoff_in=timedelta(hours=2)):
    """创建批次；current_orders 直接写库，用于构造已有占用的场景"""
    dish = dish or make_dish(services, cook)
    now = utcnow()
    batch = services.catalog.create_batch(
        cook,
        dish.id,
        scheduled_date=now + timedelta(hours=3),
        pickup_date=now + timedelta(hours=4),
        cutoff_date=now + cutoff_in,
        capacity=capacity,
    )
    if current_orders:
        services.db.execute(
            "UPDATE batches SET current_orders = ? WHERE id = ?", [current_orders, batch.id])
        batch = services.catalog.get_batch(batch.id)
    return batch


@pytest.fixture
def sample_dish(services, cook):
    return make_dish(services, cook)


@pytest.fixture
def sample_batch(services, cook, sample_dish):
    """容量20、两小时后截单的批次"""
    return make_batch(services, cook, sample_dish)


@pytest.fixture
def app_instance(test_db):
    """测试应用"""
    return create_app(db=test_db)


@pytest.fixture
def client(app_instance):
    """测试客户端"""
    with TestClient(app_instance) as c:
        yield c


def bearer(user_id: str, role: Role) -> dict:
    token = security_manager.create_jwt_token(user_id, role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def cook_headers(cook):
    return bearer(cook.user_id, cook.role)


@pytest.fixture
def buyer_headers(buyer):
    return bearer(buyer.user_id, buyer.role)


@pytest.fixture
def admin_headers(admin):
    return bearer(admin.user_id, admin.role)


@pytest.fixture
def system_headers():
    return bearer("payment-gateway", Role.SYSTEM)
