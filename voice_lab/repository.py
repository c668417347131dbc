"""
セッション行ストア

'SessionRepository' はセッション行の保存先を差し替え可能にする抽象リポジトリです。
具体的な実装として 'SupabaseSessionRepository'（本番）と
'InMemorySessionRepository'（テスト・オフライン実行用）を提供し、
コントローラーやセッションストアから保存先固有のコードを切り離します。
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from supabase import Client, create_client

from voice_lab.errors import PersistenceError
from voice_lab.models import VOICE_MODALITY, ConversationSession, TopicScore, Utterance, UserStats

logger = logging.getLogger(__name__)

# クイズ1回あたりの満点（30問 x 2点）
QUIZ_MAX_SCORE = 60


def compute_user_stats(user_id: str, users: List[dict], quizzes: List[dict], chats: List[dict]) -> UserStats:
    """
    行データから学習状況を集計

    Args:
        user_id: 対象ユーザーID
        users: ユーザー行（total_points を含む）
        quizzes: 対象ユーザーのクイズ進捗行（topic, score）
        chats: 対象ユーザーのチャットセッション行（modality）

    Returns:
        UserStats
    """
    ranked = sorted(users, key=lambda u: u.get("total_points") or 0, reverse=True)
    rank = "-"
    total_points = 0
    for index, user in enumerate(ranked):
        if user.get("id") == user_id:
            rank = str(index + 1)
            total_points = user.get("total_points") or 0
            break

    topic_scores = [
        TopicScore(
            topic=quiz.get("topic", ""),
            score=quiz.get("score") or 0,
            total=QUIZ_MAX_SCORE,
            percent=round((quiz.get("score") or 0) / QUIZ_MAX_SCORE * 100),
        )
        for quiz in quizzes
    ]

    return UserStats(
        rank=rank,
        total_points=total_points,
        quizzes_attempted=len(quizzes),
        topic_scores=topic_scores,
        total_chats=len(chats),
        voice_chats=sum(1 for chat in chats if chat.get("modality") == VOICE_MODALITY),
    )


class SessionRepository(ABC):
    """'ConversationSession' 行の抽象リポジトリ"""

    @abstractmethod
    async def list_sessions(self, user_id: str, modality: str = VOICE_MODALITY) -> List[ConversationSession]:
        """ユーザーのセッションを新しい順に取得"""

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[ConversationSession]:
        pass

    @abstractmethod
    async def insert_session(self, session: ConversationSession) -> ConversationSession:
        pass

    @abstractmethod
    async def update_messages(self, user_id: str, session_id: str, messages: List[Utterance]) -> None:
        """発話列を丸ごと書き換え（user_id が所有する行のみ対象）"""

    @abstractmethod
    async def update_title(self, user_id: str, session_id: str, title: str) -> None:
        pass

    @abstractmethod
    async def delete_session(self, user_id: str, session_id: str) -> None:
        pass

    @abstractmethod
    async def fetch_user_stats(self, user_id: str) -> UserStats:
        pass


class InMemorySessionRepository(SessionRepository):
    """
    辞書ベースのリポジトリ

    読み書き時にディープコピーを取るため、呼び出し側が保持するオブジェクトを
    変更しても保存済みの行には影響しません。

    Attributes:
        users: ユーザー行（id, total_points）
        quiz_progress: ユーザーID -> クイズ進捗行のリスト
    """

    def __init__(self):
        self._sessions: Dict[str, ConversationSession] = {}
        self.users: List[dict] = []
        self.quiz_progress: Dict[str, List[dict]] = {}

    async def list_sessions(self, user_id: str, modality: str = VOICE_MODALITY) -> List[ConversationSession]:
        sessions = [
            copy.deepcopy(s) for s in self._sessions.values()
            if s.user_id == user_id and s.modality == modality
        ]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    async def get_session(self, session_id: str) -> Optional[ConversationSession]:
        session = self._sessions.get(session_id)
        return copy.deepcopy(session) if session else None

    async def insert_session(self, session: ConversationSession) -> ConversationSession:
        if session.id in self._sessions:
            raise PersistenceError(f"Session {session.id} already exists")
        self._sessions[session.id] = copy.deepcopy(session)
        return copy.deepcopy(session)

    async def update_messages(self, user_id: str, session_id: str, messages: List[Utterance]) -> None:
        self._require(user_id, session_id).messages = list(messages)

    async def update_title(self, user_id: str, session_id: str, title: str) -> None:
        self._require(user_id, session_id).title = title

    async def delete_session(self, user_id: str, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session and session.user_id == user_id:
            del self._sessions[session_id]

    async def fetch_user_stats(self, user_id: str) -> UserStats:
        chats = [s.to_row() for s in self._sessions.values() if s.user_id == user_id]
        return compute_user_stats(user_id, self.users, self.quiz_progress.get(user_id, []), chats)

    def _require(self, user_id: str, session_id: str) -> ConversationSession:
        session = self._sessions.get(session_id)
        if session is None or session.user_id != user_id:
            raise PersistenceError(f"Session {session_id} not found")
        return session


class SupabaseSessionRepository(SessionRepository):
    """
    Supabase（PostgREST）ベースのリポジトリ

    supabase-py のクライアントは同期APIのため、全ての呼び出しを
    デフォルトのスレッドプールで実行し、イベントループをブロックしません。

    テーブル:
        chat_sessions: id, user_id, title, messages(json), created_at, modality
        users: id, total_points
        quiz_progress: user_id, topic, score

    Raises:
        PersistenceError: クライアント呼び出しが失敗した場合（全メソッド共通）
    """

    def __init__(self, client: Client, sessions_table: str = "chat_sessions",
                 users_table: str = "users", quiz_table: str = "quiz_progress"):
        self.client = client
        self.sessions_table = sessions_table
        self.users_table = users_table
        self.quiz_table = quiz_table
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config) -> "SupabaseSessionRepository":
        """
        AppConfig から生成

        Args:
            config (AppConfig): supabase_url / supabase_key / session を含む設定
        """
        client = create_client(config.supabase_url, config.supabase_key)
        return cls(
            client,
            sessions_table=config.session.sessions_table,
            users_table=config.session.users_table,
            quiz_table=config.session.quiz_table,
        )

    async def _execute(self, description: str, build_query):
        """
        クエリをスレッドプールで実行し、行データを返す

        Args:
            description: ログ用の処理名
            build_query: 実行可能なクエリを組み立てる関数
        """
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(None, lambda: build_query().execute())
        except Exception as e:
            self.logger.error(f"Supabase {description} failed: {e}")
            raise PersistenceError(f"{description} failed: {e}") from e
        return response.data or []

    async def list_sessions(self, user_id: str, modality: str = VOICE_MODALITY) -> List[ConversationSession]:
        rows = await self._execute(
            "list_sessions",
            lambda: self.client.table(self.sessions_table)
            .select("*")
            .eq("user_id", user_id)
            .eq("modality", modality)
            .order("created_at", desc=True),
        )
        return [ConversationSession.model_validate(row) for row in rows]

    async def get_session(self, session_id: str) -> Optional[ConversationSession]:
        rows = await self._execute(
            "get_session",
            lambda: self.client.table(self.sessions_table).select("*").eq("id", session_id).limit(1),
        )
        return ConversationSession.model_validate(rows[0]) if rows else None

    async def insert_session(self, session: ConversationSession) -> ConversationSession:
        await self._execute(
            "insert_session",
            lambda: self.client.table(self.sessions_table).insert(session.to_row()),
        )
        return session

    async def update_messages(self, user_id: str, session_id: str, messages: List[Utterance]) -> None:
        payload = [m.model_dump(mode="json") for m in messages]
        await self._execute(
            "update_messages",
            lambda: self.client.table(self.sessions_table).update({"messages": payload})
            .eq("id", session_id)
            .eq("user_id", user_id),
        )

    async def update_title(self, user_id: str, session_id: str, title: str) -> None:
        await self._execute(
            "update_title",
            lambda: self.client.table(self.sessions_table).update({"title": title})
            .eq("id", session_id)
            .eq("user_id", user_id),
        )

    async def delete_session(self, user_id: str, session_id: str) -> None:
        await self._execute(
            "delete_session",
            lambda: self.client.table(self.sessions_table).delete()
            .eq("id", session_id)
            .eq("user_id", user_id),
        )

    async def fetch_user_stats(self, user_id: str) -> UserStats:
        users = await self._execute(
            "fetch_users",
            lambda: self.client.table(self.users_table)
            .select("id, total_points")
            .order("total_points", desc=True),
        )
        quizzes = await self._execute(
            "fetch_quiz_progress",
            lambda: self.client.table(self.quiz_table).select("*").eq("user_id", user_id),
        )
        chats = await self._execute(
            "fetch_chat_counts",
            lambda: self.client.table(self.sessions_table).select("id, modality").eq("user_id", user_id),
        )
        return compute_user_stats(user_id, users, quizzes, chats)
