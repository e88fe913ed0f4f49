"""
Tests for route_metrics/model.py
"""

import pytest

from route_metrics.model import (
    Invocation,
    RequestEvent,
    RequestEventType,
    Resource,
    ResourceMethod,
    ResourceModel,
)


def search(query: str, page: int = 1, *, size: int = 20):
    return query, page, size


def root():
    pass


def child():
    pass


def grandchild():
    pass


@pytest.mark.unit
class TestInvocation:
    def test_positional_and_keyword_values(self):
        invocation = Invocation(search, ("books",), {"size": 5})

        assert invocation.parameter_value(0) == "books"
        assert invocation.parameter_value(2) == 5

    def test_defaults_fill_missing_arguments(self):
        invocation = Invocation(search, kwargs={"query": "books"})

        assert invocation.parameter_value(1) == 1
        assert invocation.arguments == {"query": "books", "page": 1, "size": 20}

    def test_call(self):
        assert Invocation(search, ("books", 2)).call() == ("books", 2, 20)

    def test_out_of_range_position(self):
        with pytest.raises(IndexError):
            Invocation(search, ("books",)).parameter_value(3)


@pytest.mark.unit
class TestResourceModel:
    def test_all_methods_walks_children_in_order(self):
        model = ResourceModel(resources=(
            Resource("/", methods=(ResourceMethod(root, "/"),), child_resources=(
                Resource("/a", methods=(ResourceMethod(child, "/a/x"),), child_resources=(
                    Resource("/a/b", methods=(ResourceMethod(grandchild, "/a/b/y"),)),
                )),
            )),
        ))

        assert [m.definition_method for m in model.all_methods()] == [root, child, grandchild]

    def test_method_name(self):
        assert ResourceMethod(search).name == "search"


@pytest.mark.unit
class TestRequestEvent:
    def test_matched_method(self):
        event = RequestEvent(RequestEventType.RESOURCE_METHOD_START, Invocation(search, ("q",)))

        assert event.matched_method is search

    def test_no_matched_method_without_invocation(self):
        assert RequestEvent(RequestEventType.REQUEST_MATCHED).matched_method is None
