import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import pytest

from responses import CountingResponse, reference_loop


@pytest.fixture
def counting_reference():
    return CountingResponse(reference_loop)


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")
