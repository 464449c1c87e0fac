from typing import List

from vgame.ledger import Event
from vgame.local import LocalChain


def mine_blocks(chain: LocalChain, n_blocks: int) -> int:
    return chain.mine_blocks(n_blocks)


def events_of_type(chain: LocalChain, event_type: type) -> List[Event]:
    return [evt for evt in chain.log if isinstance(evt, event_type)]
