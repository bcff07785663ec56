import pytest

from book import Book
from errors import StorageError, UnavailableError, ValidationError


def test_favoriting_unregistered_book_creates_unloanable_stub(lib, loan_input):
    stub = lib.lookup.search("rings")[1]
    stored = lib.favorites.add("user-1", stub)

    assert stored.key == "OL27448W"
    assert stored.is_stub
    assert lib.registry.get("OL27448W").cover_url_small.endswith("14625765-S.jpg")
    with pytest.raises(UnavailableError):
        lib.inventory.create_loan(loan_input("OL27448W"))


def test_favoriting_registered_book_keeps_counters(lib, add_book):
    add_book("OL1M", "Dune", quantity=2)
    stored = lib.favorites.add("user-1", Book(key="OL1M", title="Dune", description="Spice."))
    assert (stored.quantity, stored.available_quantity) == (2, 2)
    assert stored.description == "Spice."


def test_list_is_most_recent_first_and_readd_moves_to_front(lib):
    for key in ("OL1M", "OL2M", "OL3M"):
        lib.favorites.add("user-1", Book(key=key, title=f"Title {key}"))
    assert [b.key for b in lib.favorites.list("user-1")] == ["OL3M", "OL2M", "OL1M"]

    lib.favorites.add("user-1", Book(key="OL1M", title="Title OL1M"))
    assert [b.key for b in lib.favorites.list("user-1")] == ["OL1M", "OL3M", "OL2M"]


def test_favorites_are_per_user(lib):
    lib.favorites.add("user-1", Book(key="OL1M", title="Dune"))
    assert lib.favorites.list("user-2") == []
    assert lib.favorites.is_favorite("user-1", "OL1M")
    assert not lib.favorites.is_favorite("user-2", "OL1M")


def test_remove_is_idempotent(lib):
    lib.favorites.add("user-1", Book(key="OL1M", title="Dune"))
    assert lib.favorites.remove("user-1", "OL1M") is True
    assert lib.favorites.remove("user-1", "OL1M") is False
    assert not lib.favorites.is_favorite("user-1", "OL1M")
    assert lib.registry.find("OL1M") is not None


def test_list_batches_lookups_and_keeps_order(lib, monkeypatch):
    keys = [f"OL{i}M" for i in range(70)]
    for key in keys:
        lib.favorites.add("user-1", Book(key=key, title=key))

    batch_sizes = []
    original = lib.registry.get_many

    def spy(requested, batch_size=None):
        batch_sizes.append(batch_size)
        return original(requested, batch_size)

    monkeypatch.setattr(lib.registry, "get_many", spy)
    books = lib.favorites.list("user-1")
    assert [b.key for b in books] == list(reversed(keys))
    assert batch_sizes == [30]


def test_cache_is_reconciled_after_mutations(lib):
    lib.favorites.add("user-1", Book(key="OL1M", title="Dune"))
    assert lib.cache.get("favorites:user-1") == ["OL1M"]
    lib.favorites.add("user-1", Book(key="OL2M", title="Emma"))
    assert lib.cache.get("favorites:user-1") == ["OL2M", "OL1M"]
    lib.favorites.remove("user-1", "OL1M")
    assert lib.favorites.favorite_keys("user-1") == ["OL2M"]


def test_store_error_drops_cached_entry(lib, monkeypatch):
    lib.favorites.add("user-1", Book(key="OL1M", title="Dune"))

    def failing(fn, timeout=None):
        raise StorageError("Unexpected storage error.")

    monkeypatch.setattr(lib.database, "run_in_transaction", failing)
    with pytest.raises(StorageError):
        lib.favorites.add("user-1", Book(key="OL2M", title="Emma"))
    assert lib.cache.get("favorites:user-1") is None

    monkeypatch.undo()
    assert lib.favorites.favorite_keys("user-1") == ["OL1M"]


@pytest.mark.parametrize("user_id", ["", "   ", None])
def test_user_id_is_required(lib, user_id):
    with pytest.raises(ValidationError) as exc:
        lib.favorites.add(user_id, Book(key="OL1M", title="Dune"))
    assert exc.value.field == "user_id"


def test_new_stub_needs_a_title(lib):
    with pytest.raises(ValidationError):
        lib.favorites.add("user-1", Book(key="OL1M", title="  "))
    assert lib.favorites.list("user-1") == []


def test_is_favorite_sees_changes_made_by_other_processes(lib):
    lib.favorites.add("user-1", Book(key="OL1M", title="Dune"))
    assert lib.cache.get("favorites:user-1") == ["OL1M"]

    with lib.database.connection() as conn:
        conn.execute("DELETE FROM favorites WHERE user_id = 'user-1'")

    assert not lib.favorites.is_favorite("user-1", "OL1M")
    assert lib.cache.get("favorites:user-1") == []
