import pytest

from mindmap_agent.cache import (
    GenericCache,
    SemanticCache,
    SimilarityCache,
    SimilarityScore,
    generate_cache_key,
    generate_semantic_tokens,
    jaccard_similarity,
    similarity_cache_key,
)


@pytest.mark.parametrize("first, second", [("a", "b"), ("theme-9", "theme-10"), ("x", "x")])
def test_similarity_cache_key_is_symmetric(first, second):
    assert similarity_cache_key(first, second) == similarity_cache_key(second, first)


def test_generic_cache_ttl_expiry(clock):
    cache = GenericCache(default_ttl=60, clock=clock)
    cache.set("key", "value")

    clock.advance(60 - 0.001)
    assert cache.get("key") == "value"

    clock.advance(0.002)
    assert cache.get("key") is None
    assert cache.size() == 0


def test_generic_cache_explicit_ttl_and_cleanup(clock):
    cache = GenericCache(default_ttl=60, clock=clock)
    cache.set("short", 1, ttl=5)
    cache.set("long", 2)

    clock.advance(10)
    assert cache.cleanup_expired() == 1
    assert cache.has("long")
    assert not cache.has("short")


def test_generic_cache_delete_and_prefix(clock):
    cache = GenericCache(clock=clock)
    cache.set("ctx:a", 1)
    cache.set("ctx:b", 2)
    cache.set("other:c", 3)

    assert sorted(cache.keys_with_prefix("ctx:")) == ["ctx:a", "ctx:b"]
    assert cache.delete("ctx:a")
    assert not cache.delete("ctx:a")
    cache.clear()
    assert cache.size() == 0


def test_similarity_cache_shared_between_orders(clock):
    cache = SimilarityCache(clock=clock)
    score = SimilarityScore(score=0.9, should_merge=True, confidence=0.9)
    cache.set("b", "a", score, files=["src/auth.py"])

    assert cache.get("a", "b") is score
    assert cache.get_stats()["hits"] == 1


def test_similarity_cache_invalidate_by_files(clock):
    cache = SimilarityCache(clock=clock)
    cache.set("a", "b", SimilarityScore(0.9, True, 0.9), files=["src/auth.py", "src/user.py"])
    cache.set("c", "d", SimilarityScore(0.1, False, 0.9), files=["src/billing.py"])

    assert cache.invalidate_by_files(["src/user.py"]) == 1
    assert cache.get("a", "b") is None
    assert cache.get("c", "d") is not None


def test_similarity_cache_expires(clock):
    cache = SimilarityCache(ttl=10, clock=clock)
    cache.set("a", "b", SimilarityScore(0.9, True, 0.9))
    clock.advance(11)
    assert cache.get("a", "b") is None


def test_generate_cache_key_is_stable_across_key_order():
    assert generate_cache_key({"a": 1, "b": [1, 2]}) == generate_cache_key({"b": [1, 2], "a": 1})
    assert len(generate_cache_key("text")) == 16


def test_semantic_tokens_drop_stop_words_and_use_file_names():
    tokens = generate_semantic_tokens({"name": "Add the login form", "affected_files": ["src/auth/login.py"]})
    assert tokens == frozenset({"add", "login", "form"})


# NEAR has ten tokens: the variant shares 9 of 10, the far input 6 of 12
BASE_WORDS = "alpha bravo charlie delta echo foxtrot golf hotel india"
NEAR = {"name": BASE_WORDS + " juliet"}
NEAR_VARIANT = {"name": BASE_WORDS}
FAR_VARIANT = {"name": "alpha bravo charlie delta echo foxtrot kilo lima"}


def test_semantic_cache_fuzzy_hit_at_ninety_percent(clock):
    assert jaccard_similarity(generate_semantic_tokens(NEAR), generate_semantic_tokens(NEAR_VARIANT)) == pytest.approx(0.9)

    cache = SemanticCache(clock=clock)
    cache.set(NEAR, "cached-domain", "domain-classification")

    assert cache.get(NEAR_VARIANT, "domain-classification") == "cached-domain"
    assert cache.get_stats()["semantic_hits"] == 1


def test_semantic_cache_miss_at_half_similarity(clock):
    assert jaccard_similarity(generate_semantic_tokens(NEAR), generate_semantic_tokens(FAR_VARIANT)) == pytest.approx(0.5)

    cache = SemanticCache(clock=clock)
    cache.set(NEAR, "cached-domain", "domain-classification")
    assert cache.get(FAR_VARIANT, "domain-classification") is None


def test_semantic_cache_is_namespaced_by_context(clock):
    cache = SemanticCache(clock=clock)
    cache.set(NEAR, "value", "domain-classification")
    assert cache.get(NEAR, "theme-expansion") is None
    assert cache.get(NEAR, "domain-classification") == "value"


def test_semantic_cache_context_ttl(clock):
    cache = SemanticCache(clock=clock)
    cache.set(NEAR, "value", "cross-level-analysis")
    clock.advance(30 * 60 + 1)
    assert cache.get(NEAR, "cross-level-analysis") is None


def test_semantic_cache_invalidate_by_files(clock):
    cache = SemanticCache(clock=clock)
    cache.set({"name": "Login flow", "affectedFiles": ["src/login.py"]}, "a", "domain-classification")
    cache.set({"name": "Billing export", "affectedFiles": ["src/billing.py"]}, "b", "domain-classification")

    assert cache.invalidate_by_files(["src/login.py"]) == 1
    assert cache.get({"name": "Billing export", "affectedFiles": ["src/billing.py"]}, "domain-classification") == "b"


def test_inputs_without_tokens_never_fuzzy_match(clock):
    assert generate_semantic_tokens({"name": "UI"}) == frozenset()
    assert jaccard_similarity(frozenset(), frozenset()) == 0.0

    cache = SemanticCache(clock=clock)
    cache.set({"name": "UI"}, "User Interface", "domain-classification")

    assert cache.get({"name": "DB"}, "domain-classification") is None
    assert cache.get({"name": "UI"}, "domain-classification") == "User Interface"
