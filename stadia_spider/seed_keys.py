"""Well-known keys inserted into a fresh cache before any crawling."""

import string

PLAYER = (
    "956082794034380385",
    "5478196876050978967",
    "6820190109831870452",
    "12195660895651674916",
)

STORE_LIST = (3,)

# Every two-character name prefix; searches that saturate expand from here.
PLAYER_SEARCH = tuple(
    first + second
    for first in string.ascii_lowercase
    for second in string.ascii_lowercase + string.digits
)

GAME = ()
SKU = ()
SUBSCRIPTION = ()
CAPTURE = ()
