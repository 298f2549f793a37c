from __future__ import annotations

import re
import threading

import pytest

from mdsm.core.clients import ClientStore


def test_add_find_remove():
    store = ClientStore()
    c = store.add("class_A", {"foo": "bar"})
    assert re.fullmatch(r"[0-9a-f]{64}", c.client_id)
    assert store.find(c.client_id) is c
    assert c.client_data == {"foo": "bar"}
    assert store.remove(c.client_id) is True
    assert store.find(c.client_id) is None
    assert store.remove(c.client_id) is False


def test_insertion_order_kept():
    store = ClientStore()
    ids = [store.add("A").client_id for _ in range(5)]
    assert store.ids() == ids
    assert len(store) == 5


def test_id_and_class_are_immutable():
    c = ClientStore().add("A", None)
    with pytest.raises(AttributeError):
        c.client_id = "x"
    with pytest.raises(AttributeError):
        c.client_class = "B"
    c.client_data = {"changed": True}
    assert c.client_data == {"changed": True}


def test_concurrent_adds_and_removes():
    store = ClientStore()

    def worker():
        for _ in range(200):
            c = store.add("A")
            assert store.remove(c.client_id)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(store) == 0
