"""Application root: builds the service graph once and hands it out explicitly."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .config import Settings
from .forward_store import PendingForwardStore
from .forwarding import ForwardingEngine
from .graph_client import GraphIdConverter, GraphMailClient
from .host import EmlBuilder, HostMailbox
from .id_resolver import IdentifierResolver
from .identity import MsalIdentityPlatform
from .models import TokenKind
from .orchestrator import SubmissionOrchestrator
from .placement_client import PlacementClient
from .token_broker import TokenBroker


@dataclass
class Services:
    settings: Settings
    broker: TokenBroker
    graph: GraphMailClient
    resolver: IdentifierResolver
    placement_client: PlacementClient
    forwarding: ForwardingEngine
    store: PendingForwardStore
    orchestrator: SubmissionOrchestrator


def build_services(
    settings: Settings,
    eml_builder: EmlBuilder,
    host_mailbox: HostMailbox | None = None,
    identity=None,
    user_email: Optional[str] = None,
) -> Services:
    """Wire every collaborator; hosts without native id conversion use Graph."""
    identity = identity or MsalIdentityPlatform(settings)
    broker = TokenBroker.from_settings(settings, identity)
    graph = GraphMailClient(settings)

    if host_mailbox is not None:
        converter = host_mailbox.convert_to_rest_ids
        user_email = user_email or host_mailbox.user_email
    else:

        async def graph_token() -> Optional[str]:
            record = await broker.get_token(TokenKind.GRAPH)
            return record.access_token if record else None

        converter = GraphIdConverter(graph, graph_token)

    resolver = IdentifierResolver(converter)
    placement_client = PlacementClient(settings)
    forwarding = ForwardingEngine(graph, resolver)
    store = PendingForwardStore(settings.forward_store_db)
    orchestrator = SubmissionOrchestrator(
        broker=broker,
        placement_client=placement_client,
        forwarding=forwarding,
        resolver=resolver,
        eml_builder=eml_builder,
        forward_mailbox=settings.forward_mailbox,
        user_email=user_email,
        store=store,
    )
    return Services(
        settings=settings,
        broker=broker,
        graph=graph,
        resolver=resolver,
        placement_client=placement_client,
        forwarding=forwarding,
        store=store,
        orchestrator=orchestrator,
    )
