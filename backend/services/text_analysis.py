"""Lexical normalisation shared by indexing and query analysis.

Chunks and queries must go through the same tokenizer, otherwise lexical
matching silently degrades. Tokens are lowercased word characters; hyphenated
compounds ("follow-up") are kept whole.
"""
import re
from collections import Counter
from typing import Iterable, List, Set

STOP_WORDS = frozenset("""
a about above after again against all also am an and any are aren't as at be
because been before being below between both but by can can't cannot could
couldn't did didn't do does doesn't doing don't down during each few for from
further had hadn't has hasn't have haven't having he he'd he'll he's her here
here's hers herself him himself his how how's i i'd i'll i'm i've if in into is
isn't it it's its itself just let's me more most mustn't my myself no nor not
now of off on once only or other ought our ours ourselves out over own same
shan't she she'd she'll she's should shouldn't so some such than that that's
the their theirs them themselves then there there's these they they'd they'll
they're they've this those through to too under until up very was wasn't we
we'd we'll we're we've were weren't what what's when when's where where's which
while who who's whom why why's will with won't would wouldn't you you'd you'll
you're you've your yours yourself yourselves
find show tell give get know anything something
""".split())

_NON_WORD = re.compile(r"[^\w\s\-']")


def tokenize(text: str) -> List[str]:
    """Lowercase, drop punctuation (keeping hyphens and apostrophes inside words), split."""
    text = _NON_WORD.sub(" ", text.lower())
    tokens = []
    for raw in text.split():
        token = raw.strip("-'")
        if token:
            tokens.append(token)
    return tokens


def content_tokens(text: str) -> List[str]:
    """Tokens with stop words removed, in text order."""
    return [token for token in tokenize(text) if token not in STOP_WORDS]


def lexical_signature(text: str) -> Counter:
    """Normalised token multiset used for full-text matching."""
    return Counter(content_tokens(text))


def extract_keywords(text: str, exclude: Iterable[str] = ()) -> Set[str]:
    excluded = set(exclude)
    return {token for token in content_tokens(text) if token not in excluded}
