"""Tests for weighted sampling, next-character fallback and the text stream."""
import pickle
import random
from collections import Counter
from itertools import islice

import pytest

from markov import FrequencyModel, Generator, EmptyModel, ModelCorrupt


class FixedRandom:
    """Stands in for random.Random, handing out predetermined draws."""

    def __init__(self, *draws):
        self.draws = list(draws)
        self.calls = []

    def randrange(self, stop):
        n = self.draws.pop(0)
        assert 0 <= n < stop, "draw {} out of range [0, {})".format(n, stop)
        self.calls.append(stop)
        return n


def trained(order, text):
    model = FrequencyModel(order)
    model.train(text)
    return model


@pytest.mark.parametrize("draw,expected", [(0, "ab"), (1, "ab"), (2, "ba")])
def test_sample_sequence_buckets(draw, expected):
    model = trained(2, "abab")
    gen = Generator(model, rng=FixedRandom(draw))
    assert gen.sample_sequence() == expected


def test_sample_sequence_draws_over_total():
    model = trained(2, "abab")
    rng = FixedRandom(0)
    Generator(model, rng=rng).sample_sequence()
    assert rng.calls == [3]


def test_sample_sequence_skips_zero_counts():
    model = FrequencyModel(1)
    model.overwrite("a", 0)
    model.overwrite("b", 2)
    model.overwrite("c", 0)
    model.overwrite("d", 1)
    gen = Generator(model, rng=FixedRandom(0, 1, 2))
    assert [gen.sample_sequence() for _ in range(3)] == ["b", "b", "d"]


def test_sample_sequence_empty_model():
    with pytest.raises(EmptyModel):
        Generator(FrequencyModel(2)).sample_sequence()


def test_sample_sequence_total_disagrees_with_counts():
    model = trained(2, "abab")
    model.total_occurrences = 5
    gen = Generator(model, rng=FixedRandom(4))
    with pytest.raises(ModelCorrupt):
        gen.sample_sequence()


def test_sample_sequence_distribution():
    """Empirical frequencies approach count / total."""
    model = FrequencyModel(2)
    model.overwrite("aa", 1)
    model.overwrite("ab", 3)
    model.overwrite("ba", 6)
    gen = Generator(model, rng=random.Random(1234))
    trials = 20000
    seen = Counter(gen.sample_sequence() for _ in range(trials))
    for seq, count in model.frequencies.items():
        expected = count / model.total_occurrences
        assert abs(seen[seq] / trials - expected) < 0.02, seq


def test_sample_from_submodel():
    model = trained(2, "abab")
    gen = Generator(model, rng=FixedRandom(0))
    assert gen.sample_sequence(model.submodel("b")) == "ba"


# ---------------------------------------------------------------------- #
#  next_character                                                         #
# ---------------------------------------------------------------------- #

def test_next_character_uses_trailing_context():
    # abc, bcb, cbc, bcd
    model = trained(3, "abcbcd")
    gen = Generator(model, rng=FixedRandom(0))
    assert gen.next_character("zab") == "c"


def test_next_character_weighted_by_submodel():
    model = trained(3, "abcbcd")
    # submodel("bc") holds bcb and bcd, one each
    assert Generator(model, rng=FixedRandom(0)).next_character("abc") == "b"
    assert Generator(model, rng=FixedRandom(1)).next_character("abc") == "d"


def test_next_character_falls_back_to_shorter_context():
    model = trained(3, "abcbcd")
    # nothing starts with "qb"; "b" matches bcb and bcd
    gen = Generator(model, rng=FixedRandom(1))
    assert gen.next_character("qqb") == "d"


def test_next_character_falls_back_to_whole_model():
    model = trained(3, "xyz")
    for context in ["qqq", "qq", "q"]:
        gen = Generator(model, rng=FixedRandom(0))
        assert gen.next_character(context) == "z"


def test_next_character_cold_start():
    model = trained(2, "abab")
    assert Generator(model, rng=FixedRandom(2)).next_character("") == "b"
    assert Generator(model, rng=FixedRandom(0)).next_character("") == "a"


def test_next_character_trims_long_context():
    model = trained(2, "abab")
    gen = Generator(model, rng=FixedRandom(0))
    # only the trailing "ba" matters, so "a" is the lookup prefix
    assert gen.next_character("zzzzba") == "b"


def test_next_character_never_fails_on_unseen_contexts():
    model = trained(4, "the quick brown fox jumps over the lazy dog")
    gen = Generator(model, rng=random.Random(7))
    for context in ["", "Q", "QZ", "QZX", "QZXW", "ZZZe", "zzz "]:
        ch = gen.next_character(context)
        assert any(ch in seq for seq in model.sequences()), context


def test_next_character_empty_model():
    gen = Generator(FrequencyModel(3))
    for context in ["", "a", "abc"]:
        with pytest.raises(EmptyModel):
            gen.next_character(context)


# ---------------------------------------------------------------------- #
#  Stream                                                                 #
# ---------------------------------------------------------------------- #

def test_stream_starts_with_sampled_sequence():
    model = trained(3, "abcbcd")
    gen = Generator(model, rng=FixedRandom(0, 0, 0))
    assert "".join(islice(gen.stream(), 4)) == "abcb"


def test_stream_follows_transitions():
    model = trained(2, "abab")
    text = "".join(islice(Generator(model, rng=random.Random(3)).stream(), 50))
    assert len(text) == 50
    for a, b in zip(text, text[1:]):
        assert a != b, text


def test_stream_follows_cycle():
    # abc, bca, cab: every context has exactly one continuation
    model = trained(3, "abcabcab")
    text = "".join(islice(Generator(model, rng=random.Random(11)).stream(), 300))
    assert text in "abc" * 102


def test_stream_same_seed_same_text():
    model = trained(3, "it was the best of times, it was the worst of times")
    a = "".join(islice(Generator(model, rng=random.Random(42)).stream(), 200))
    b = "".join(islice(Generator(model, rng=random.Random(42)).stream(), 200))
    assert a == b


def test_stream_empty_model():
    stream = Generator(trained(3, "")).stream()
    with pytest.raises(EmptyModel):
        next(stream)


def test_zero_count_submodel_falls_back(tmp_path):
    """A prefix whose only sequences have count 0 shortens the context."""
    path = tmp_path / "zeros.pkl"
    with open(path, "wb") as f:
        pickle.dump({"order": 2, "total_occurrences": 1,
                     "frequencies": {"ab": 0, "ba": 1}}, f)
    model = FrequencyModel.load(str(path))

    gen = Generator(model, rng=random.Random(0))
    assert gen.next_character("ba") == "a"
    assert "".join(islice(gen.stream(), 4)) == "baaa"
