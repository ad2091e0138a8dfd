from __future__ import annotations

import pytest

from graph_runbooks.util.errors import FetchError
from graph_runbooks.util.pagination import paginate


def test_paginate_yields_all_items_and_pages_in_order() -> None:
    calls = []
    pages = {
        None: (["a", "b"], "next"),
        "next": (["c"], None),
    }

    def fetch(link):
        calls.append(link)
        return pages[link]

    items = list(paginate(fetch))
    assert items == ["a", "b", "c"]
    assert calls == [None, "next"]


def test_paginate_stops_on_empty_link_after_empty_page() -> None:
    calls = []

    def fetch(link):
        calls.append(link)
        if link is None:
            return [], "p2"
        return ["x"], ""

    assert list(paginate(fetch)) == ["x"]
    assert calls == [None, "p2"]


def test_paginate_single_page() -> None:
    assert list(paginate(lambda _link: ([1, 2, 3], None))) == [1, 2, 3]


def test_paginate_no_results() -> None:
    assert list(paginate(lambda _link: ([], None))) == []


def test_paginate_repeated_next_link_raises() -> None:
    def fetch(link):
        return ["item"], "https://graph.test/v1.0/users?$skiptoken=same"

    with pytest.raises(FetchError):
        list(paginate(fetch))
