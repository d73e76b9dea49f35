from common import DAY_MS, DELIVERED_KEY, DELIVERED_TTL_MS
from dedup import DedupCache

from conftest import GUILD, T0_MS


def test_mark_save_load(store):
    ts = store.tenant(GUILD)
    c = DedupCache.load(ts, T0_MS)
    assert c.entries == {}
    c.mark_delivered("a:1", T0_MS)
    c.save()
    again = DedupCache.load(ts, T0_MS + 1)
    assert again.entries == {"a:1": T0_MS}
    assert again.is_delivered("a:1")
    assert not again.is_delivered("a:2")


def test_prune_drops_entries_older_than_retention(store):
    ts = store.tenant(GUILD)
    ts.put(DELIVERED_KEY, {
        "old:1": T0_MS - DELIVERED_TTL_MS - 1,
        "edge:1": T0_MS - DELIVERED_TTL_MS,
        "new:1": T0_MS - DAY_MS,
        "junk:1": "yesterday",
        "flag:1": True,
    })
    c = DedupCache.load(ts, T0_MS)
    assert sorted(c.entries) == ["edge:1", "new:1"]


def test_non_dict_value_resets(store):
    ts = store.tenant(GUILD)
    ts.put(DELIVERED_KEY, ["a:1"])
    assert DedupCache.load(ts, T0_MS).entries == {}


def test_custom_ttl(store):
    c = DedupCache(store.tenant(GUILD), {"a:1": T0_MS - 10}, ttl_ms=5)
    assert c.prune(T0_MS) == 1
    assert c.entries == {}
