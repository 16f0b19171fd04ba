#!/usr/bin/env python
import os
import sys
import time
import random
import pickle
import logging
from bisect import bisect_left
from argparse import ArgumentParser, ArgumentDefaultsHelpFormatter

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------- #
#  Errors                                                                 #
# ---------------------------------------------------------------------- #

class MarkovError(Exception):
    """Base class for everything the model and the CLI raise."""


class UsageError(MarkovError):
    """Bad arguments: order mismatch, wrong sequence length, bad corpus."""


class EmptyModel(MarkovError):
    """Sampling was attempted on a model with no occurrences."""


class ModelCorrupt(MarkovError):
    """A model file (or a model in memory) whose counts don't add up."""


class IOFailure(MarkovError):
    """Reading or writing a model or corpus file failed."""

    def __init__(self, path, cause):
        self.path = path
        self.cause = cause
        super().__init__("{}: {}".format(path, cause))


# ---------------------------------------------------------------------- #
#  Frequency Model                                                        #
# ---------------------------------------------------------------------- #

class FrequencyModel:
    """
    Histogram of every character sequence of length `order` seen in a corpus.

    `frequencies` maps sequence -> count and `total_occurrences` is kept equal
    to the sum of the counts, so sampling never has to re-count. Keys are
    also available in sorted order, which makes prefix lookups (`submodel`)
    a bisect followed by a short scan instead of a pass over the whole table.
    """

    def __init__(self, order):
        if isinstance(order, bool) or not isinstance(order, int) or order < 1:
            raise UsageError("order must be a positive integer, got {!r}".format(order))
        self.order = order
        self.frequencies = {}
        self.total_occurrences = 0
        # sorted view of frequencies' keys, rebuilt lazily after new keys
        self._sorted = []
        self._dirty = False

    def __len__(self):
        return len(self.frequencies)

    def __eq__(self, other):
        if not isinstance(other, FrequencyModel):
            return NotImplemented
        return (self.order == other.order
                and self.total_occurrences == other.total_occurrences
                and self.frequencies == other.frequencies)

    def __repr__(self):
        return "FrequencyModel(order={}, entries={}, total={})".format(
            self.order, len(self.frequencies), self.total_occurrences)

    def is_empty(self):
        return not self.frequencies

    def sequences(self):
        """Return all sequences in lexicographic order."""
        if self._dirty:
            self._sorted = sorted(self.frequencies)
            self._dirty = False
        return self._sorted

    def _check_sequence(self, sequence):
        if len(sequence) != self.order:
            raise UsageError("sequence {!r} has length {}, model order is {}".format(
                sequence, len(sequence), self.order))

    def accumulate(self, sequence):
        """Count one more occurrence of `sequence`."""
        self._check_sequence(sequence)
        old = self.frequencies.get(sequence)
        if old is None:
            self.frequencies[sequence] = 1
            self._dirty = True
        else:
            self.frequencies[sequence] = old + 1
        self.total_occurrences += 1

    def overwrite(self, sequence, count):
        """Set the count for `sequence` to `count`, keeping the total in step."""
        self._check_sequence(sequence)
        if count < 0:
            raise UsageError("count must be non-negative, got {}".format(count))
        old = self.frequencies.get(sequence)
        if old is None:
            self._dirty = True
        else:
            self.total_occurrences -= old
        self.frequencies[sequence] = count
        self.total_occurrences += count
        assert count == 0 or self.total_occurrences > 0

    def submodel(self, prefix):
        """
        Copy of the model restricted to sequences that start with `prefix`.

        The copy shares nothing with this model; changing it leaves the
        parent untouched.
        """
        sub = FrequencyModel(self.order)
        keys = self.sequences()
        matched = []
        for i in range(bisect_left(keys, prefix), len(keys)):
            key = keys[i]
            if not key.startswith(prefix):
                break
            sub.overwrite(key, self.frequencies[key])
            matched.append(key)
        # scanned in order, so already sorted
        sub._sorted = matched
        sub._dirty = False
        return sub

    def most_common(self, n=10):
        """Return the `n` most frequent (sequence, count) pairs."""
        ranked = sorted(self.frequencies.items(), key=lambda x: (-x[1], x[0]))
        return ranked[:n]

    # ------------------------------------------------------------------ #
    #  Training                                                           #
    # ------------------------------------------------------------------ #

    def train(self, chars):
        """
        Slide a window of width `order` over `chars` and count every window.

        `chars` is any iterable of single characters (a str works). Returns
        the number of sequences added.
        """
        acc = ""
        added = 0
        for ch in chars:
            acc += ch
            if len(acc) >= self.order:
                self.accumulate(acc)
                added += 1
                acc = acc[1:]
        return added

    def train_file(self, path):
        """
        Train on a UTF-8 text file, one decoded character at a time.

        Newlines are passed through untranslated so the model sees exactly
        the characters that are in the file.
        """
        def chars(f):
            for line in f:
                yield from line

        try:
            with open(path, "r", encoding="utf-8", newline="") as f:
                return self.train(chars(f))
        except UnicodeDecodeError as e:
            raise UsageError("corpus {} is not valid UTF-8: {}".format(path, e)) from e
        except OSError as e:
            raise IOFailure(path, e) from e

    # ------------------------------------------------------------------ #
    #  Save / Load                                                        #
    # ------------------------------------------------------------------ #

    def save(self, path):
        """Pickle the order, counts and total to `path`."""
        data = {
            "order": self.order,
            "total_occurrences": self.total_occurrences,
            "frequencies": dict(self.frequencies),
        }
        try:
            with open(path, "wb") as f:
                pickle.dump(data, f, protocol=pickle.HIGHEST_PROTOCOL)
        except OSError as e:
            raise IOFailure(path, e) from e

    @classmethod
    def load(cls, path, order=None):
        """
        Load a model saved with `save`.

        If `order` is given the stored order must match it. The stored total
        has to equal the sum of the counts.
        """
        try:
            with open(path, "rb") as f:
                data = pickle.load(f)
        except OSError as e:
            raise IOFailure(path, e) from e
        except (pickle.UnpicklingError, EOFError, AttributeError,
                ImportError, IndexError, KeyError, ValueError, TypeError) as e:
            raise ModelCorrupt("couldn't parse model file {}: {}".format(path, e)) from e

        model = cls._from_data(data, path)
        if order is not None and model.order != order:
            raise UsageError("model {} has order {}, expected {}".format(
                path, model.order, order))
        logger.debug("loaded %r from %s", model, path)
        return model

    @classmethod
    def _from_data(cls, data, path):
        if not isinstance(data, dict):
            raise ModelCorrupt("{}: expected a dict, found {}".format(
                path, type(data).__name__))
        try:
            order = data["order"]
            total = data["total_occurrences"]
            frequencies = data["frequencies"]
        except KeyError as e:
            raise ModelCorrupt("{}: missing field {}".format(path, e)) from e
        if isinstance(order, bool) or not isinstance(order, int) or order < 1:
            raise ModelCorrupt("{}: bad order {!r}".format(path, order))
        if not isinstance(frequencies, dict):
            raise ModelCorrupt("{}: frequencies is not a mapping".format(path))

        model = cls(order)
        for seq, count in frequencies.items():
            if not isinstance(seq, str) or len(seq) != order:
                raise ModelCorrupt("{}: bad sequence {!r} for order {}".format(
                    path, seq, order))
            if isinstance(count, bool) or not isinstance(count, int) or count < 0:
                raise ModelCorrupt("{}: bad count {!r} for {!r}".format(path, count, seq))
            model.frequencies[seq] = count
        model.total_occurrences = sum(model.frequencies.values())
        model._dirty = True
        if total != model.total_occurrences:
            raise ModelCorrupt("{}: stored total {} != sum of counts {}".format(
                path, total, model.total_occurrences))
        return model

    @classmethod
    def load_or_create(cls, path, order):
        """Load the model at `path` if there is one, else start an empty one."""
        if os.path.exists(path):
            return cls.load(path, order=order)
        return cls(order)


# ---------------------------------------------------------------------- #
#  Generator                                                              #
# ---------------------------------------------------------------------- #

class Generator:
    """
    Draws text from a FrequencyModel.

    Each new character is picked by taking the trailing `order - 1`
    characters of what has been generated so far, restricting the model to
    sequences starting with them, and sampling one of those by weight; its
    last character is the next one. When no sequence starts with that
    context, the context is shortened one character at a time until
    something matches. An empty context samples from the whole model, so
    generation never gets stuck on a non-empty model.
    """

    def __init__(self, model, rng=None):
        self.model = model
        self.rng = rng if rng is not None else random.Random()

    def sample_sequence(self, model=None):
        """Pick a sequence from `model` (default: the root model) by weight."""
        if model is None:
            model = self.model
        if model.total_occurrences <= 0:
            raise EmptyModel("empty markov model: {!r}".format(model))

        n = self.rng.randrange(model.total_occurrences)
        low = high = 0
        for key in model.sequences():
            high += model.frequencies[key]
            if low <= n < high:
                return key
            low = high

        raise ModelCorrupt("counts sum to {} but total is {}".format(
            high, model.total_occurrences))

    def next_character(self, context):
        """Return the character that follows `context`."""
        context = context[-self.model.order:] if context else ""
        while context:
            reduced = context[1:]
            sub = self.model.submodel(reduced)
            # zero-count entries can't be sampled
            if sub.total_occurrences > 0:
                return self.sample_sequence(sub)[-1]
            logger.debug("nothing to sample for %r, retrying with %r", context, reduced)
            context = reduced
        return self.sample_sequence()[0]

    def stream(self):
        """Yield characters forever, starting from a sampled sequence."""
        prior = self.sample_sequence()
        for ch in prior:
            yield ch
        while True:
            ch = self.next_character(prior)
            prior = prior[1:] + ch
            yield ch


# ---------------------------------------------------------------------- #
#  Commands                                                               #
# ---------------------------------------------------------------------- #

def train_to_file(order, model_path, corpus_paths):
    """Train the model stored at `model_path` (creating it if needed)."""
    t_before = time.perf_counter()
    loading = os.path.exists(model_path)
    if loading:
        if model_path.endswith(".txt"):
            raise UsageError("whoops, that would overwrite '{}'!".format(model_path))
        print("loading existing model file '{}'".format(model_path))

    t_this = time.perf_counter()
    model = FrequencyModel.load_or_create(model_path, order)
    if loading:
        print("  loaded in {:.3f} sec.".format(time.perf_counter() - t_this))

    for corpus in corpus_paths:
        print("training from file '{}'".format(corpus))
        t_this = time.perf_counter()
        added = model.train_file(corpus)
        print("  trained on {} sequences in {:.3f} sec.".format(
            added, time.perf_counter() - t_this))

    print("writing model file '{}'".format(model_path))
    t_this = time.perf_counter()
    model.save(model_path)
    print("  wrote model ({} entries, {} occurrences) in {:.3f} sec.".format(
        len(model), model.total_occurrences, time.perf_counter() - t_this))
    print("done in {:.3f} sec overall!".format(time.perf_counter() - t_before))
    return model


def generate_from_file(model_path, out=None, rng=None):
    """Write an endless stream of generated text from `model_path` to `out`."""
    if out is None:
        out = sys.stdout
    t_before = time.perf_counter()
    model = FrequencyModel.load(model_path)
    print("model ({} entries, {} occurrences) loaded in {:.3f} sec.".format(
        len(model), model.total_occurrences, time.perf_counter() - t_before),
        file=sys.stderr)

    for ch in Generator(model, rng=rng).stream():
        out.write(ch)
        out.flush()


# ---------------------------------------------------------------------- #
#  CLI Interface                                                          #
# ---------------------------------------------------------------------- #

def build_parser():
    parser = ArgumentParser(description="Character-level Markov text generator",
                            formatter_class=ArgumentDefaultsHelpFormatter)
    parser.add_argument("--verbose", "-v", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="mode", required=True, help="what to run")

    train = sub.add_parser("train", help="train a model on one or more text files",
                           formatter_class=ArgumentDefaultsHelpFormatter)
    train.add_argument("order", type=int, help="length of the sequences to count")
    train.add_argument("model", help="model file to create or extend")
    train.add_argument("corpus", nargs="+", help="UTF-8 text files to train on")

    gen = sub.add_parser("generate", help="write generated text until interrupted",
                         formatter_class=ArgumentDefaultsHelpFormatter)
    gen.add_argument("model", help="model file to generate from")
    gen.add_argument("--seed", type=int, default=None, help="random seed")
    return parser


def _silence_stdout():
    """Point stdout at devnull so the interpreter's final flush doesn't fail."""
    try:
        fd = sys.stdout.fileno()
    except (AttributeError, OSError, ValueError):
        return
    devnull = os.open(os.devnull, os.O_WRONLY)
    os.dup2(devnull, fd)
    os.close(devnull)


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%H:%M:%S'
    )

    try:
        if args.mode == "train":
            train_to_file(args.order, args.model, args.corpus)
        elif args.mode == "generate":
            rng = random.Random(args.seed) if args.seed is not None else None
            try:
                generate_from_file(args.model, rng=rng)
            except KeyboardInterrupt:
                print()
            except BrokenPipeError:
                # reader went away (e.g. piped into head)
                _silence_stdout()
        else:
            raise NotImplementedError("Unknown mode {}".format(args.mode))
    except MarkovError as e:
        print("error: {}".format(e), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
