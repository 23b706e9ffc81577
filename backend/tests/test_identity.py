import asyncio

import pytest

import identity
from errors import Conflict, NotFound, Unauthorized
from identity import IdentityStore
from database import UnitOfWork
from schemas import UserUpdate


async def test_register_hashes_password_and_assigns_customer(services):
    user = await services.identity.register("Omar", "Omar@Example.com", "hunter22")

    assert user.email == "omar@example.com"
    assert user.role == "customer"
    assert user.password != "hunter22"
    assert user.password.startswith("$2")


async def test_duplicate_email_conflicts(services):
    await services.identity.register("Omar", "omar@example.com", "hunter22")

    with pytest.raises(Conflict):
        await services.identity.register("Other", "OMAR@example.com", "x")
    assert len(services.identity.users) == 1


async def test_authenticate(services):
    user = await services.identity.register("Omar", "omar@example.com", "hunter22")

    identity = services.identity.authenticate("omar@example.com", "hunter22")
    assert (identity.id, identity.role) == (user.id, "customer")

    with pytest.raises(Unauthorized):
        services.identity.authenticate("omar@example.com", "wrong")
    with pytest.raises(NotFound):
        services.identity.authenticate("missing@example.com", "hunter22")


async def test_promote_is_idempotent(services):
    user = await services.identity.register("Omar", "omar@example.com", "hunter22")

    await services.identity.promote(user.id)
    await services.identity.promote(user.id)

    assert services.identity.get(user.id).role == "admin"


async def test_list_redacted_hides_hashes(services):
    await services.identity.register("A", "a@example.com", "pw")
    await services.identity.register("B", "b@example.com", "pw")

    listed = services.identity.list_redacted()

    assert [u.email for u in listed] == ["a@example.com", "b@example.com"]
    assert all("password" not in u.model_dump() for u in listed)


async def test_admin_update_is_partial(services):
    user = await services.identity.register("A", "a@example.com", "pw")

    await services.identity.admin_update(user.id, UserUpdate(name="Alice", password="new-pw"))

    stored = services.identity.get(user.id)
    assert stored.name == "Alice"
    assert stored.email == "a@example.com"
    services.identity.authenticate("a@example.com", "new-pw")


async def test_admin_update_rejects_taken_email(services):
    await services.identity.register("A", "a@example.com", "pw")
    b = await services.identity.register("B", "b@example.com", "pw")

    with pytest.raises(Conflict):
        await services.identity.admin_update(b.id, UserUpdate(email="A@example.com"))
    assert services.identity.get(b.id).email == "b@example.com"


async def test_admin_delete(services):
    user = await services.identity.register("A", "a@example.com", "pw")

    await services.identity.admin_delete(user.id)

    with pytest.raises(NotFound):
        services.identity.get(user.id)
    with pytest.raises(NotFound):
        await services.identity.admin_delete(user.id)


async def test_ids_are_not_reused_after_delete(services):
    a = await services.identity.register("A", "a@example.com", "pw")
    b = await services.identity.register("B", "b@example.com", "pw")
    await services.identity.admin_delete(a.id)

    c = await services.identity.register("C", "c@example.com", "pw")

    assert c.id == b.id + 1


async def test_newest_user_id_is_not_reused_after_delete(services):
    await services.identity.register("A", "a@example.com", "pw")
    b = await services.identity.register("B", "b@example.com", "pw")
    await services.identity.admin_delete(b.id)

    c = await services.identity.register("C", "c@example.com", "pw")

    assert c.id == b.id + 1


async def test_id_high_water_mark_survives_reload(services, gateway, clock):
    await services.identity.register("A", "a@example.com", "pw")
    b = await services.identity.register("B", "b@example.com", "pw")
    await services.identity.admin_delete(b.id)

    reloaded = IdentityStore(UnitOfWork(gateway), clock=clock)
    await reloaded.uow.load()
    c = await reloaded.register("C", "c@example.com", "pw")

    assert c.id == b.id + 1


async def test_hashing_happens_outside_the_write_lock(services, monkeypatch):
    seen = []

    def hash_password(password):
        seen.append(services.uow._lock.locked())
        return "$2b$04$" + password

    monkeypatch.setattr(identity, "hash_password", hash_password)
    user = await services.identity.register("A", "a@example.com", "pw")
    await services.identity.update_credential("a@example.com", "pw2")
    await services.identity.admin_update(user.id, UserUpdate(password="pw3"))

    assert seen == [False, False, False]
    assert services.identity.get(user.id).password == "$2b$04$pw3"


async def test_email_taken_while_hashing_conflicts(services):
    results = await asyncio.gather(
        services.identity.register("A", "a@example.com", "pw"),
        services.identity.register("Other", "A@example.com", "pw"),
        return_exceptions=True,
    )

    assert sum(isinstance(r, Conflict) for r in results) == 1
    assert len(services.identity.users) == 1


async def test_users_survive_reload(services, gateway, clock):
    user = await services.identity.register("A", "a@example.com", "pw")

    reloaded = IdentityStore(UnitOfWork(gateway), clock=clock)
    await reloaded.uow.load()

    assert reloaded.get(user.id) == user
    reloaded.authenticate("a@example.com", "pw")
