#!/usr/bin/env python3
"""Print a summary of a trained markov model file."""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), '..', 'src'))
from argparse import ArgumentParser

from markov import FrequencyModel, MarkovError


def summarize(model, top=10):
    lines = [
        f"Order: {model.order}",
        f"Entries: {len(model):,}",
        f"Total occurrences: {model.total_occurrences:,}",
    ]
    if model.total_occurrences:
        lines.append(f"Top {top} sequences:")
        for seq, count in model.most_common(top):
            share = count / model.total_occurrences
            lines.append(f"  {seq!r:>{model.order + 8}}  {count:>10,}  ({share:.2%})")
    return lines


def main(argv=None):
    parser = ArgumentParser(description=__doc__)
    parser.add_argument('model', help='model file written by `markov train`')
    parser.add_argument('--top', type=int, default=10, help='how many sequences to list')
    args = parser.parse_args(argv)

    try:
        model = FrequencyModel.load(args.model)
    except MarkovError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    sz = os.path.getsize(args.model)
    print(f"Loaded {args.model} ({sz/1024:.1f}KB)")
    for line in summarize(model, args.top):
        print(line)
    return 0


if __name__ == '__main__':
    sys.exit(main())
