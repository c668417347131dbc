"""
ボイスセッションストア

サイドバーに表示するセッション一覧と、現在アクティブなセッション
（ID・発話列・下書きフラグ）を管理します。

下書き（draft）セッションはメモリ上にのみ存在し、最初の保存で行が作成されます。
以降の保存は同じ行の発話列を丸ごと書き換えます（後勝ち）。
"""

import logging
from typing import List, Optional, Set

from voice_lab.models import (
    VOICE_MODALITY,
    ConversationSession,
    UserProfile,
    Utterance,
    generate_timestamp_id,
    get_current_timestamp,
    greeting_utterance,
)
from voice_lab.repository import SessionRepository

logger = logging.getLogger(__name__)


class VoiceSessionStore:
    """
    音声会話セッションの読み込み・切り替え・削除・保存

    Attributes:
        repository (SessionRepository): 行ストア
        user_id (str): 所有ユーザーID
        profile (UserProfile): 挨拶文に使う生徒プロフィール
        default_title (str): タイトル生成前のプレースホルダー
        sessions (list[ConversationSession]): サイドバー用一覧（新しい順）
        active_id (str): アクティブなセッションID
        messages (list[Utterance]): アクティブなセッションの発話列
        is_draft (bool): アクティブなセッションが未保存か
    """

    def __init__(self, repository: SessionRepository, user_id: str,
                 profile: Optional[UserProfile] = None, default_title: str = "Voice Chat"):
        self.repository = repository
        self.user_id = user_id
        self.profile = profile or UserProfile()
        self.default_title = default_title
        self.sessions: List[ConversationSession] = []
        self.active_id: Optional[str] = None
        self.messages: List[Utterance] = []
        self._draft_ids: Set[str] = set()   # 行がまだ作成されていない下書きのID
        self.logger = logging.getLogger(__name__)

    @property
    def is_draft(self) -> bool:
        return self.active_id in self._draft_ids

    async def load(self, initial_session_id: Optional[str] = None) -> None:
        """
        ユーザーの音声セッション一覧を読み込み、開始セッションを決定

        Args:
            initial_session_id: 再開を要求されたセッションID

        Note:
            要求されたIDが一覧に無い場合はIDで直接取得を試みます。
            他ユーザーの行、または音声以外の行は採用しません。
            見つからない場合（または要求が無い場合）は新しい下書きを作成します。
        """
        self.sessions = await self.repository.list_sessions(self.user_id, VOICE_MODALITY)
        self.logger.info(f"Loaded {len(self.sessions)} voice sessions for user {self.user_id}")

        target = None
        if initial_session_id:
            target = self.find(initial_session_id)
            if target is None:
                direct = await self.repository.get_session(initial_session_id)
                if direct and direct.user_id == self.user_id and direct.modality == VOICE_MODALITY:
                    target = direct
                else:
                    self.logger.warning(f"Requested session {initial_session_id} not found, starting a new one")

        if target:
            self._activate(target)
        else:
            self.new_draft()

    def find(self, session_id: str) -> Optional[ConversationSession]:
        return next((s for s in self.sessions if s.id == session_id), None)

    def new_draft(self) -> str:
        """
        新しい下書きセッションを作成（保存はしない）

        Returns:
            新しいセッションID
        """
        self.active_id = generate_timestamp_id()
        self.messages = [greeting_utterance(self.profile.name)]
        self._draft_ids.add(self.active_id)
        self.logger.info(f"Started draft session {self.active_id}")
        return self.active_id

    def switch(self, session_id: str) -> bool:
        """
        アクティブなセッションを切り替え

        Args:
            session_id: 切り替え先のセッションID

        Returns:
            True: 切り替えた, False: 既にアクティブ（何もしない）

        Raises:
            KeyError: 一覧に無いセッションIDの場合
        """
        if session_id == self.active_id:
            return False
        session = self.find(session_id)
        if session is None:
            raise KeyError(session_id)
        self._activate(session)
        return True

    async def delete(self, session_id: str) -> bool:
        """
        セッションを削除

        Args:
            session_id: 削除するセッションID

        Returns:
            アクティブなセッションを削除した場合 True（新しい下書きに置き換え済み）
        """
        await self.repository.delete_session(self.user_id, session_id)
        self.sessions = [s for s in self.sessions if s.id != session_id]
        self._draft_ids.discard(session_id)
        self.logger.info(f"Deleted session {session_id}")

        if session_id == self.active_id:
            self.new_draft()
            return True
        return False

    async def persist(self, session_id: str, messages: List[Utterance]) -> None:
        """
        発話列を保存（下書きなら行を作成、保存済みなら更新）

        Args:
            session_id: 書き込み対象のセッションID
            messages: 保存する発話列（全体）

        Note:
            書き込みは常に session_id の行に対して行われます。
            保存中に別のセッションへ切り替わった場合、アクティブなセッションの
            発話列は変更しません（アクティブかどうかは保存完了後に判定します）。
        """
        messages = list(messages)

        if session_id in self._draft_ids:
            session = ConversationSession(
                id=session_id,
                user_id=self.user_id,
                title=self.default_title,
                messages=messages,
                created_at=get_current_timestamp(),
            )
            # 保存中に同じ下書きへの2回目の保存が来ても行を二重に作らない
            self._draft_ids.discard(session_id)
            try:
                await self.repository.insert_session(session)
            except Exception:
                self._draft_ids.add(session_id)
                raise
            self.sessions.insert(0, session.model_copy(deep=True))
            self.logger.info(f"Persisted draft session {session_id}")
        else:
            await self.repository.update_messages(self.user_id, session_id, messages)
            entry = self.find(session_id)
            if entry:
                entry.messages = messages

        if session_id == self.active_id:
            self.messages = messages
        else:
            self.logger.info(f"Saved session {session_id} in the background (no longer active)")

    async def rename(self, session_id: str, title: str) -> None:
        await self.repository.update_title(self.user_id, session_id, title)
        entry = self.find(session_id)
        if entry:
            entry.title = title

    def _activate(self, session: ConversationSession) -> None:
        self.active_id = session.id
        self.messages = list(session.messages)
        self.logger.info(f"Activated session {session.id} ({len(self.messages)} utterances)")
