"""
データモデル

ボイスセッション（ConversationSession）と発話（Utterance）、
およびバックエンドへの付加情報（UserProfile, UserStats）を定義します。

セッション行は "modality" 列で音声会話とテキスト会話を区別します。
chat_sessions 行はテキストチャットと共有しているため、アシスタント発話は
テキストチャットと同じ role="model" で書き込み、読み込み時に assistant に戻します。
"""

import threading
import time
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

VOICE_MODALITY = "voice"
GREETING_ID = "init"
# chat_sessions 行でのアシスタント発話の role（テキストチャットと共通）
ROW_ASSISTANT_ROLE = "model"


class Role(str, Enum):
    """発話者の種別"""
    USER = "user"
    ASSISTANT = "assistant"


def get_current_timestamp() -> int:
    """現在時刻（エポックミリ秒）"""
    return int(time.time() * 1000)


class _TimestampIds:
    """
    タイムスタンプ由来のID発行

    同一ミリ秒内に複数回呼ばれても、プロセス内では単調増加する値を返します。
    """

    def __init__(self):
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> str:
        with self._lock:
            value = max(get_current_timestamp(), self._last + 1)
            self._last = value
            return str(value)


_ids = _TimestampIds()


def generate_timestamp_id() -> str:
    """
    タイムスタンプ由来のIDを生成

    Returns:
        エポックミリ秒の文字列（プロセス内で厳密に増加）

    Note:
        グローバルな一意性は保証しません（1ユーザー1端末での利用を前提とした割り切り）。
    """
    return _ids.next()


class UtteranceMeta(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str = VOICE_MODALITY


class Utterance(BaseModel):
    """
    会話中の1発話

    一度作成した発話は変更できません（frozen）。ターンは追加のみで、編集はしません。
    """
    model_config = ConfigDict(frozen=True)

    id: str
    role: Role
    text: str
    timestamp: int
    meta: UtteranceMeta = Field(default_factory=UtteranceMeta)

    @field_validator("role", mode="before")
    @classmethod
    def _row_role(cls, value):
        # 行の "model" は assistant
        if value == ROW_ASSISTANT_ROLE:
            return Role.ASSISTANT
        return value

    @field_serializer("role")
    def _shared_row_role(self, role: Role) -> str:
        # テキストチャットと同じ表現で書き込む
        return ROW_ASSISTANT_ROLE if role == Role.ASSISTANT else role.value

    @classmethod
    def create(cls, role: Role, text: str) -> "Utterance":
        return cls(id=generate_timestamp_id(), role=role, text=text, timestamp=get_current_timestamp())


class ConversationSession(BaseModel):
    """
    ユーザー1人が所有する音声会話セッション

    Attributes:
        id: タイムスタンプ由来のセッションID
        user_id: 所有ユーザーID
        title: セッションタイトル（初期値はプレースホルダー、後で自動生成で上書き）
        messages: 発話の列（保存時は毎回全体を書き換え）
        created_at: 作成時刻（エポックミリ秒）
        modality: 音声/テキストの判別子
    """

    id: str
    user_id: str
    title: str
    messages: List[Utterance] = Field(default_factory=list)
    created_at: int
    modality: str = VOICE_MODALITY

    def to_row(self) -> dict:
        return self.model_dump(mode="json")


class UserProfile(BaseModel):
    name: Optional[str] = None
    interests: Optional[str] = None


class TopicScore(BaseModel):
    topic: str
    score: int
    total: int = 60
    percent: int


class UserStats(BaseModel):
    """
    生徒の最新の学習状況（応答のパーソナライズ用）

    Attributes:
        rank: 全体順位（不明な場合は "-"）
        total_points: 累計ポイント
        quizzes_attempted: 受験したクイズ数
        topic_scores: トピック別スコア
        total_chats: チャットセッション数
        voice_chats: うち音声会話の数
    """
    rank: str = "-"
    total_points: int = 0
    quizzes_attempted: int = 0
    topic_scores: List[TopicScore] = Field(default_factory=list)
    total_chats: int = 0
    voice_chats: int = 0


class EnrichmentContext(BaseModel):
    """バックエンドに渡す付加情報（プロフィール + 最新の学習状況）"""
    name: Optional[str] = None
    interests: Optional[str] = None
    stats: Optional[UserStats] = None


def greeting_utterance(name: Optional[str]) -> Utterance:
    """
    新規セッションの最初に置く挨拶を生成

    Args:
        name: 生徒の名前（Noneなら "friend"）

    Returns:
        id="init" のアシスタント発話
    """
    return Utterance(
        id=GREETING_ID,
        role=Role.ASSISTANT,
        text=f"Hello {name or 'friend'}! I'm ready to chat. What's on your mind?",
        timestamp=get_current_timestamp(),
    )
