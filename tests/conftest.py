import pytest

from lualink import BindingConfig, ReturnPolicy, RuntimeContext


def make_context(policy=ReturnPolicy.TABLE, open_libs=True, encoding="UTF-8"):
    return RuntimeContext(BindingConfig(return_policy=policy, open_libs=open_libs, encoding=encoding))


@pytest.fixture
def ctx():
    context = make_context()
    yield context
    context.close()


@pytest.fixture
def bare_ctx():
    context = make_context(open_libs=False)
    yield context
    context.close()


@pytest.fixture
def single_ctx():
    context = make_context(ReturnPolicy.SINGLE)
    yield context
    context.close()


@pytest.fixture
def vector_ctx():
    context = make_context(ReturnPolicy.VECTOR)
    yield context
    context.close()
