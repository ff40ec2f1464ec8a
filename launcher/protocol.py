"""Deployment pipeline: identity, wallet link, content, publish, launchpad trigger.

Each step appends a line to the outcome log in order, so a failed attempt shows
exactly how far it got. Registration and publish failures end the attempt;
wallet linking and the trigger only degrade it.
"""

from __future__ import annotations

import logging

from launcher.agents import AgentVariant, get_agent
from launcher.content import build_content, get_launchpad, validate_tax
from launcher.launchpads import trigger_launchpad
from launcher.models import (
    AgentCredentials,
    Candidate,
    DeploymentOutcome,
    DeployTarget,
    LinkedWallet,
    PreconditionError,
    StepError,
)
from launcher.wallet_link import chain_id_for, link_evm_wallet
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

__all__ = ["DeploymentProtocol", "PreconditionError", "StepError"]


class DeploymentProtocol:
    def __init__(self, http: ResilientHttpClient) -> None:
        self._http = http

    @staticmethod
    def check_preconditions(token: Candidate, target: DeployTarget) -> AgentVariant:
        if not token.name or not token.symbol:
            raise PreconditionError("Token name and symbol are required")
        get_launchpad(target.launchpad)
        variant = get_agent(target.agent)
        if variant.requires_user_key and not target.existing_api_key:
            raise PreconditionError(
                f"{variant.label} requires an API key. Get one from the platform and enter it."
            )
        if target.launchpad == "4claw":
            validate_tax(target.tax)
        return variant

    async def deploy(self, token: Candidate, target: DeployTarget) -> DeploymentOutcome:
        log: list[str] = []
        try:
            variant = self.check_preconditions(token, target)
        except PreconditionError as exc:
            log.append(f"Precondition failed: {exc}")
            logger.info("DEPLOY_PRECONDITION symbol=%s agent=%s error=%s", token.symbol, target.agent, exc)
            return DeploymentOutcome(success=False, message=str(exc), log=log)
        try:
            return await self._run(variant, token, target, log)
        except StepError as exc:
            log.append(f"Error: {exc}")
            logger.warning(
                "DEPLOY_FAIL symbol=%s launchpad=%s agent=%s error=%s",
                token.symbol,
                target.launchpad,
                target.agent,
                exc,
            )
            return DeploymentOutcome(success=False, message=str(exc), log=log)

    async def _run(
        self,
        variant: AgentVariant,
        token: Candidate,
        target: DeployTarget,
        log: list[str],
    ) -> DeploymentOutcome:
        api_key = target.existing_api_key
        credentials: AgentCredentials | None = None

        if not api_key:
            log.append(f'Registering "{token.name}" agent on {variant.register_label}...')
            registration = await variant.registrar(self._http, token)
            api_key = registration.api_key
            credentials = AgentCredentials(api_key=api_key, agent_handle=registration.handle)
            log.append(f'Agent "{registration.handle}" registered on {variant.register_label}')

        wallet: LinkedWallet | None = None
        if variant.links_wallet:
            chain_id = chain_id_for(target.chain or token.chain)
            try:
                wallet = await link_evm_wallet(self._http, api_key, chain_id, log)
            except StepError as exc:
                log.append(f"Wallet link failed, posting anyway: {exc}")
                logger.warning("WALLET_LINK_FAIL symbol=%s error=%s", token.symbol, exc)
            if credentials is not None:
                credentials.linked_wallet = wallet

        pad = get_launchpad(target.launchpad)
        content = build_content(variant.content_format, pad.id, token, target)
        submolt = target.submolt or pad.submolt

        log.append(f"Posting to {variant.publish_label}...")
        post_id = await variant.publisher(self._http, api_key, content, token, submolt)
        log.append(f"Posted to {variant.publish_label}! ID: {post_id or 'none'}")

        trigger = await trigger_launchpad(self._http, pad.id, variant.trigger_source, post_id, api_key)
        log.append(trigger)

        logger.info(
            "DEPLOY_OK symbol=%s launchpad=%s agent=%s post=%s",
            token.symbol,
            pad.id,
            variant.id,
            post_id,
        )
        return DeploymentOutcome(
            success=True,
            message=f"Posted via {variant.label}. {trigger}",
            log=log,
            post_id=post_id,
            post_url=variant.url_for(post_id),
            auto_scanned=variant.auto_scanned,
            credentials=credentials,
        )
