import logging
from typing import Optional, Sequence

from web3 import Web3

from .models import GasQuote, MintAccount, SignedSubmission

logger = logging.getLogger("mintrace.builder")


class TransactionBuilder:
    """Composes and signs mint transactions without touching the network.

    Call data is encoded against an offline contract object, so the signed
    payload is valid for any endpoint of the chain.
    """

    def __init__(
        self,
        contract_address: str,
        abi: Sequence[dict],
        chain_id: int,
        launchpad_fee: int,
        gas_limit: int,
        mint_function: str = "mintPhase2",
        quantity: int = 1,
    ) -> None:
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.contract = Web3().eth.contract(address=self.contract_address, abi=list(abi))
        self.chain_id = chain_id
        self.launchpad_fee = launchpad_fee
        self.gas_limit = gas_limit
        self.mint_function = mint_function
        self.quantity = quantity

    def encode_call(self, proof: Sequence[bytes]) -> str:
        return self.contract.encode_abi(self.mint_function, args=[list(proof), self.quantity])

    def build(
        self,
        account: MintAccount,
        proof: Sequence[bytes],
        gas_quote: GasQuote,
        nonce: int,
        fee: Optional[int] = None,
        gas_limit: Optional[int] = None,
    ) -> dict:
        tx = {
            "type": 2,
            "chainId": self.chain_id,
            "from": account.address,
            "to": self.contract_address,
            "value": self.launchpad_fee if fee is None else fee,
            "gas": gas_limit or self.gas_limit,
            "nonce": nonce,
            "data": self.encode_call(proof),
        }
        tx.update(gas_quote.as_tx_fields())
        return tx

    def sign(self, account: MintAccount, tx: dict) -> SignedSubmission:
        unsigned = dict(tx)
        unsigned.pop("from", None)
        signed = account.signer.sign_transaction(unsigned)
        return SignedSubmission(
            account_address=account.address,
            signed_payload=bytes(signed.raw_transaction),
            tx_hash=Web3.to_hex(signed.hash),
            gas_quote=GasQuote(tx["maxFeePerGas"], tx["maxPriorityFeePerGas"]),
            nonce=tx["nonce"],
        )
