import store


def test_chat_messages_in_same_millisecond_keep_creation_order(ddb, monkeypatch):
    monkeypatch.setattr(store, "_now_ms", lambda: 1_700_000_000_000)
    for content in ("first", "second", "third", "fourth"):
        store.create_chat_message("u1", "user", content)

    messages = store.list_chat_messages("u1")

    assert [m.content for m in messages] == ["first", "second", "third", "fourth"]


def test_newest_chat_messages_are_returned_oldest_first(ddb, monkeypatch):
    monkeypatch.setattr(store, "_now_ms", lambda: 1_700_000_000_000)
    for i in range(5):
        store.create_chat_message("u1", "assistant", f"m{i}")

    messages = store.list_chat_messages("u1", limit=3)

    assert [m.content for m in messages] == ["m2", "m3", "m4"]


def test_chat_sort_key_orders_by_time_then_sequence():
    keys = [
        store.chat_sort_key(1_700_000_000_001, 0, "zzz"),
        store.chat_sort_key(1_700_000_000_000, 10, "aaa"),
        store.chat_sort_key(1_700_000_000_000, 9, "bbb"),
    ]

    assert sorted(keys) == [keys[2], keys[1], keys[0]]
