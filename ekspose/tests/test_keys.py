from __future__ import annotations

from types import SimpleNamespace

import pytest

from ekspose.src.keys import InvalidKeyError, WorkloadRef, meta_namespace_key, split_meta_namespace_key


def _obj(namespace: str | None, name: str | None) -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(namespace=namespace, name=name))


def test_meta_namespace_key_joins_namespace_and_name() -> None:
    assert meta_namespace_key(_obj("shop", "cart")) == "shop/cart"


@pytest.mark.parametrize(
    ("namespace", "name"),
    [(None, "cart"), ("shop", None), ("", "cart"), ("shop", "")],
)
def test_meta_namespace_key_rejects_incomplete_identity(
    namespace: str | None, name: str | None
) -> None:
    with pytest.raises(InvalidKeyError):
        meta_namespace_key(_obj(namespace, name))


def test_meta_namespace_key_rejects_object_without_metadata() -> None:
    with pytest.raises(InvalidKeyError):
        meta_namespace_key(SimpleNamespace())


def test_split_key_returns_workload_ref() -> None:
    ref = split_meta_namespace_key("shop/cart")

    assert ref == WorkloadRef(namespace="shop", name="cart")
    assert str(ref) == "shop/cart"


@pytest.mark.parametrize("key", ["cart", "/cart", "shop/", "a/b/c", "", "/"])
def test_split_key_rejects_malformed_keys(key: str) -> None:
    with pytest.raises(InvalidKeyError):
        split_meta_namespace_key(key)


def test_split_key_rejects_non_string_items() -> None:
    with pytest.raises(InvalidKeyError, match="unexpected key type"):
        split_meta_namespace_key(("shop", "cart"))


def test_workload_ref_is_hashable_and_comparable() -> None:
    refs = {WorkloadRef("shop", "cart"), WorkloadRef("shop", "cart")}
    assert len(refs) == 1
