from typing import Dict, Optional

from .coordinator import Coordinator
from .local import LocalChain


class Environment:
    def __init__(self, chain: LocalChain, coordinators: Dict[str, Coordinator], interactive: bool):
        self.chain = chain
        self.coordinators = coordinators
        self.interactive = interactive

    def coordinator(self, name: str) -> Coordinator:
        if name not in self.coordinators:
            raise ValueError(f"Unknown party: {name}")
        return self.coordinators[name]

    def prompt(self, message: Optional[str] = None):
        if message is not None:
            print(message)
        if self.interactive:
            print("Press Enter to continue...")
            input()
