from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Union

from paygate.config import NetworkConfig
from paygate.schemas import (
    ChallengeDocument,
    ChallengeNetwork,
    ChallengePrice,
    Network,
    PriceSpec,
)


def build_challenge(
    resource: str,
    description: str,
    price: Union[PriceSpec, Decimal, str],
    recipients: Mapping[Network, str],
    output_schema: Optional[Dict[str, Any]] = None,
    networks: Optional[Mapping[Network, NetworkConfig]] = None,
) -> ChallengeDocument:
    """Build the 402 body describing how to pay for ``resource``.

    Networks without a recipient are left out, so every advertised network can
    actually be paid on. ``networks`` adds chain id and asset details when given.
    """
    if not isinstance(price, PriceSpec):
        price = PriceSpec(amount=Decimal(str(price)))

    advertised = [network for network in Network if recipients.get(network)]

    details = []
    if networks:
        for network in advertised:
            config = networks.get(network)
            if config is None:
                continue
            details.append(
                ChallengeNetwork(
                    network=network,
                    chain_id=config.chain_id,
                    asset=price.asset_symbol,
                    asset_address=price.assets.get(network) or config.asset_address,
                    recipient=recipients[network],
                    decimals=config.decimals,
                )
            )

    return ChallengeDocument(
        resource=resource,
        description=description,
        price=ChallengePrice(amount=price.amount_str, asset=price.asset_symbol),
        recipients={network.value: recipients[network] for network in advertised},
        networks=details,
        output_schema=dict(output_schema or {}),
    )
