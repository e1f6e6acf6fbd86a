"""External collaborators — prover and chain client boundaries."""

from zkstate.external.chain import ChainClient, Web3ChainClient, load_abi
from zkstate.external.prover import HttpProver, Prover, flatten_proof
from zkstate.external.retry import CallPolicy

__all__ = [
    "CallPolicy",
    "ChainClient",
    "HttpProver",
    "Prover",
    "Web3ChainClient",
    "flatten_proof",
    "load_abi",
]
