import pytest

import sys
import os
from pathlib import Path

from dotenv import load_dotenv

from vgame.local import LocalChain, make_address
from test_utils.treegraph import create_tree_graph

root_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), '../')
sys.path.append(root_path)

from examples.duel.toyvm import ToyVM  # noqa: E402

load_dotenv()

bond_amount = int(os.getenv("VGAME_BOND_AMOUNT", 999))
challenge_period = int(os.getenv("VGAME_CHALLENGE_PERIOD", 100))
timeout_duration = int(os.getenv("VGAME_TIMEOUT_DURATION", 10))


def pytest_addoption(parser):
    parser.addoption("--dispute_graph", action="store_true")


@pytest.fixture
def dispute_graph(request: pytest.FixtureRequest):
    return request.config.getoption("--dispute_graph", False)


@pytest.fixture
def chain():
    """A chain with the parameters of the enforcer contract tests: no time to respond in a dispute."""
    return LocalChain(ToyVM(), bond_amount=999, challenge_period=3, timeout_duration=0)


@pytest.fixture
def duel_chain():
    """A chain leaving enough blocks to play a whole dispute."""
    return LocalChain(ToyVM(), bond_amount=bond_amount, challenge_period=challenge_period,
                      timeout_duration=timeout_duration)


@pytest.fixture
def addresses():
    return {name: make_address(name.encode()) for name in ["solver", "challenger", "other"]}


@pytest.fixture
def graphs(request: pytest.FixtureRequest, dispute_graph: bool):
    """Tests append (name, tree, computation_path) tuples; they are rendered if --dispute_graph is given."""
    to_render = []
    yield to_render

    if dispute_graph:
        # Create the "tests/graphs" directory if it doesn't exist
        path = Path("tests/graphs")
        path.mkdir(exist_ok=True)
        for name, tree, computation_path in to_render:
            create_tree_graph(tree, f"tests/graphs/{request.node.name}-{name}.html", computation_path)


class TestReport:
    def __init__(self):
        self.sections = {}

    def write(self, section_name, content):
        if section_name not in self.sections:
            self.sections[section_name] = []
        self.sections[section_name].append(content)

    def finalize_report(self, filename):
        with open(filename, "w") as file:
            for section, contents in self.sections.items():
                file.write(f"## {section}\n")
                for content in contents:
                    file.write(content + "\n")
                file.write("\n")


@pytest.fixture(scope="session")
def report():
    report_obj = TestReport()
    yield report_obj
    report_obj.finalize_report("report.md")
