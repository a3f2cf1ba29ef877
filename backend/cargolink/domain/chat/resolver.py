"""Find-or-create for the single conversation between two participants."""

from __future__ import annotations

import logging

from cargolink.obs import metrics as obs_metrics

from .errors import ConversationConflict, ResolutionFailure, StoreError
from .models import Conversation, ParticipantPair
from .store import ChatStore

_LOG = logging.getLogger(__name__)


class ConversationResolver:
	"""Maps a (self, peer) pair to one stable conversation.

	The store enforces uniqueness of the unordered pair. When two resolves race
	and both try to create, the loser gets `ConversationConflict` and re-reads the
	row the winner created, so both callers end up with the same conversation.
	"""

	def __init__(self, store: ChatStore) -> None:
		self._store = store

	async def resolve(self, self_id: str, peer_id: str) -> Conversation:
		pair = ParticipantPair.from_participants(self_id, peer_id)
		self_id, peer_id = self_id.strip(), peer_id.strip()
		try:
			existing = await self._store.find_conversation(self_id, peer_id)
			if existing is not None:
				obs_metrics.inc_chat_resolve("found")
				return existing
			try:
				created = await self._store.create_conversation(self_id, peer_id)
			except ConversationConflict:
				obs_metrics.inc_chat_resolve("conflict")
				winner = await self._store.find_conversation(self_id, peer_id)
				if winner is None:
					raise ResolutionFailure(f"conflict without conversation for {pair.key}") from None
				_LOG.info("chat.resolve.conflict", extra={"conversation_id": winner.conversation_id})
				return winner
		except StoreError as exc:
			obs_metrics.inc_chat_resolve("failed")
			_LOG.warning("chat.resolve.failed", extra={"pair": pair.key, "error": exc.code})
			raise ResolutionFailure(str(exc) or exc.code) from exc
		obs_metrics.inc_chat_resolve("created")
		_LOG.info("chat.resolve.created", extra={"conversation_id": created.conversation_id})
		return created
