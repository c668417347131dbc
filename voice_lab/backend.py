"""
会話バックエンド（Groq）クライアント

Groq の chat completions API を使用して、音声会話の応答と
セッションタイトルを生成します。音声合成で読み上げるため、
応答にはマークダウンや絵文字を含めないようプロンプトで指示します。
"""

import asyncio
import logging
from typing import List, Optional, Sequence, Tuple

from groq import AsyncGroq

from voice_lab.errors import BackendError
from voice_lab.models import EnrichmentContext, Role, UserStats

logger = logging.getLogger(__name__)

VOICE_SYSTEM_PROMPT = """
You are "Science Buddy", speaking directly to a Class 8 student via a voice call.
Your goal is to have a natural, friendly, and seamless conversation about science.

CRITICAL MEMORY RULES:
1. Treat this as a continuous conversation.
2. Remember what we just talked about. If I ask a follow-up question like "Why?", answer it based on the previous statement in the history.
3. Do not repeat introductions if we are already deep in conversation.

CRITICAL VOICE RULES:
1. **NO VISUALS**: Do NOT use emojis, asterisks (*), bold (**), or markdown of any kind. The output is for Text-to-Speech only.
2. **Conversational**: Speak like a human friend. Use fillers occasionally (like "Hmm", "Well") if appropriate, but keep it professional.
3. **Concise**: Keep answers short (2-3 sentences max) to allow for a back-and-forth dialogue.
4. **Engaging**: Always end with a short question to keep the conversation flowing seamlessly.
5. **Personal**: Use the student's Name and Interests frequently.
"""

TITLE_PROMPT = (
    'Summarize this message into a short, 3-5 word title for a chat session. '
    'Do not use quotes. Message: "{message}"'
)

# タイトル生成失敗時に使うメッセージ先頭の文字数
TITLE_FALLBACK_LENGTH = 30


def build_system_prompt(context: EnrichmentContext) -> str:
    """
    プロフィールと学習状況を付加したシステムプロンプトを生成

    Args:
        context: 付加情報（名前・興味・学習状況）

    Returns:
        システムプロンプト文字列
    """
    name = context.name or "Friend"
    interests = context.interests or "Science"
    prompt = VOICE_SYSTEM_PROMPT + f"\n\nUSER PROFILE:\n- Name: {name}\n- Interests: {interests}"
    if context.stats:
        prompt += "\n\n" + _format_stats(context.stats)
    return prompt


def _format_stats(stats: UserStats) -> str:
    lines = [
        "STUDENT PROGRESS:",
        f"- Global Rank: #{stats.rank}",
        f"- Total XP: {stats.total_points}",
        f"- Quizzes Taken: {stats.quizzes_attempted}",
        f"- Chat Sessions: {stats.total_chats} ({stats.voice_chats} voice)",
    ]
    if stats.topic_scores:
        scores = ", ".join(f"{t.topic} {t.percent}%" for t in stats.topic_scores)
        lines.append(f"- Topic Mastery: {scores}")
    return "\n".join(lines)


def clean_title(raw: Optional[str], message: str) -> str:
    """
    生成されたタイトルを整形

    前後の空白と引用符を取り除き、空の場合はメッセージ先頭30文字を使います。
    """
    title = (raw or "").strip() or message[:TITLE_FALLBACK_LENGTH]
    if title.startswith('"'):
        title = title[1:]
    if title.endswith('"'):
        title = title[:-1]
    return title


class TutorBackend:
    """
    Groq ベースの会話バックエンド

    Attributes:
        client (AsyncGroq): Groq非同期クライアント
        model (str): 使用モデル
        temperature (float): 応答生成の温度
        title_temperature (float): タイトル生成の温度
        max_tokens (int): 最大生成トークン数
        timeout (float): 1リクエストのタイムアウト（秒）
    """

    def __init__(self, client: AsyncGroq, model: str = "llama-3.3-70b-versatile",
                 temperature: float = 0.9, title_temperature: float = 0.7,
                 max_tokens: int = 4096, timeout: float = 30.0):
        self.client = client
        self.model = model
        self.temperature = temperature
        self.title_temperature = title_temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config) -> "TutorBackend":
        """
        AppConfig から生成

        Raises:
            ValueError: GROQ_API_KEY が設定されていない場合
        """
        if not config.groq_api_key:
            raise ValueError("GROQ_API_KEY is not set")
        backend = config.backend
        return cls(
            AsyncGroq(api_key=config.groq_api_key),
            model=backend.model,
            temperature=backend.temperature,
            title_temperature=backend.title_temperature,
            max_tokens=backend.max_tokens,
            timeout=backend.timeout,
        )

    async def _complete(self, messages: List[dict], temperature: float) -> str:
        """
        chat completions を呼び出して本文を返す

        Raises:
            BackendError: API エラー、タイムアウト、空の応答
        """
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=temperature,
                    max_tokens=self.max_tokens,
                    stream=False,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise BackendError(f"Groq request timed out after {self.timeout}s") from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise BackendError(f"Groq request failed: {e}") from e

        content = (response.choices[0].message.content or "").strip() if response.choices else ""
        if not content:
            raise BackendError("Groq returned an empty response")
        return content

    async def reply(self, message: str, history: Sequence[Tuple[Role, str]],
                    context: EnrichmentContext) -> str:
        """
        音声会話の応答を生成

        Args:
            message: 認識されたユーザー発話
            history: それ以前の発話（role, text）のリスト（古い順）
            context: 付加情報（プロフィール + 学習状況）

        Returns:
            アシスタントの応答テキスト

        Raises:
            BackendError: 応答を取得できなかった場合
        """
        messages = [{"role": "system", "content": build_system_prompt(context)}]
        messages.extend(
            {"role": "assistant" if role == Role.ASSISTANT else "user", "content": text}
            for role, text in history
        )
        messages.append({"role": "user", "content": message})

        self.logger.debug(f"Requesting reply (history={len(history)} turns)")
        return await self._complete(messages, self.temperature)

    async def generate_title(self, message: str) -> str:
        """
        セッションタイトル（3〜5語）を生成

        Note:
            例外は送出しません。失敗時はメッセージ先頭30文字を返します。
        """
        prompt = TITLE_PROMPT.format(message=message)
        try:
            raw = await self._complete([{"role": "user", "content": prompt}], self.title_temperature)
        except BackendError as e:
            self.logger.warning(f"Title generation failed, using message prefix: {e}")
            raw = None
        return clean_title(raw, message)
