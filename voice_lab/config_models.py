"""
設定モデル - Pydanticベースの型安全な設定管理

このモジュールは、Voice Lab全体の設定を型安全に管理します。
環境変数（.envファイル）から自動的に読み込まれ、デフォルト値とバリデーションを提供します。
ネストされた設定は "__" 区切りの環境変数で上書きできます（例: BACKEND__TEMPERATURE=0.5）。
"""

from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BackendConfig(BaseModel):
    """
    会話バックエンド（Groq）設定

    Attributes:
        model: 使用するモデル名
        temperature: 音声会話の応答生成温度
        title_temperature: タイトル生成の温度
        max_tokens: 最大生成トークン数
        timeout: API呼び出しのタイムアウト（秒）
    """
    model: str = Field(default="llama-3.3-70b-versatile", description="Groqモデル")
    temperature: float = Field(default=0.9, description="応答生成温度")
    title_temperature: float = Field(default=0.7, description="タイトル生成温度")
    max_tokens: int = Field(default=4096, description="最大生成トークン数")
    timeout: float = Field(default=30.0, description="APIタイムアウト（秒）")


class CaptureConfig(BaseModel):
    """
    音声認識設定

    Attributes:
        language: 認識言語
        no_speech_timeout: 発話が始まらない場合に "no-speech" とみなすまでの時間（秒）
        phrase_time_limit: 1発話の最大長（秒）
        ambient_duration: 環境ノイズのキャリブレーション時間（秒）
        device_index: マイクのデバイスインデックス（Noneでデフォルト）
    """
    language: str = Field(default="en-US", description="認識言語")
    no_speech_timeout: float = Field(default=6.0, description="無音タイムアウト（秒）")
    phrase_time_limit: float = Field(default=15.0, description="発話の最大長（秒）")
    ambient_duration: float = Field(default=0.5, description="ノイズキャリブレーション時間（秒）")
    device_index: Optional[int] = Field(default=None, description="マイクデバイスインデックス")


class SynthesisConfig(BaseModel):
    """
    音声合成設定

    rate と pitch はエンジン標準値に対する倍率です。
    voice_preferences は先頭から順に音声名の部分一致で検索されます。
    """
    rate: float = Field(default=1.05, description="話速倍率")
    pitch: float = Field(default=1.05, description="ピッチ倍率")
    voice_preferences: List[str] = Field(
        default_factory=lambda: [
            "Google US English",
            "Google UK English Female",
            "Samantha",
            "Microsoft Zira",
            "Victoria",
            "Karen",
            "Hazel",
            "Susan",
        ],
        description="優先する音声名のリスト",
    )


class SessionConfig(BaseModel):
    """
    セッション保存・ターン制御の設定

    Attributes:
        sessions_table: セッション行を保存するテーブル
        users_table: ユーザー（ポイント）テーブル
        quiz_table: クイズ進捗テーブル
        default_title: タイトル生成前のプレースホルダー
        no_speech_idle_delay: 自動モードで "no-speech" 後にIDLEへ戻すまでの待ち時間（秒）
        auto_mode: シームレスモードの初期値
    """
    sessions_table: str = Field(default="chat_sessions", description="セッションテーブル")
    users_table: str = Field(default="users", description="ユーザーテーブル")
    quiz_table: str = Field(default="quiz_progress", description="クイズ進捗テーブル")
    default_title: str = Field(default="Voice Chat", description="初期タイトル")
    no_speech_idle_delay: float = Field(default=0.5, description="no-speech後の待ち時間（秒）")
    auto_mode: bool = Field(default=True, description="シームレスモード初期値")


class AppConfig(BaseSettings):
    """
    アプリケーション全体設定

    環境変数から自動的に読み込まれる、アプリケーション全体の設定を管理します。
    .env ファイルからの読み込みに対応しています。

    Attributes:
        groq_api_key: Groq APIキー
        supabase_url: SupabaseプロジェクトURL（未設定ならインメモリ保存）
        supabase_key: Supabase APIキー
        user_id: コンソールアプリで使用するユーザーID
        user_name: 生徒の名前（挨拶とプロンプトに使用）
        user_interests: 生徒の興味・学習スタイル
        backend: 会話バックエンド設定
        capture: 音声認識設定
        synthesis: 音声合成設定
        session: セッション設定
        log_dir: ログ出力ディレクトリ
        log_level: ログレベル

    Examples:
        >>> from voice_lab.config_models import AppConfig
        >>> config = AppConfig(groq_api_key="dummy")
        >>> print(config.backend.model)
        llama-3.3-70b-versatile
        >>> print(config.session.default_title)
        Voice Chat
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore"
    )

    # APIキー
    groq_api_key: str = Field(default="", description="Groq APIキー")
    supabase_url: Optional[str] = Field(default=None, description="Supabase URL")
    supabase_key: Optional[str] = Field(default=None, description="Supabase APIキー")

    # ユーザー情報
    user_id: str = Field(default="local-student", description="ユーザーID")
    user_name: Optional[str] = Field(default=None, description="生徒の名前")
    user_interests: Optional[str] = Field(default=None, description="生徒の興味")

    # ネストされた設定
    backend: BackendConfig = Field(default_factory=BackendConfig, description="バックエンド設定")
    capture: CaptureConfig = Field(default_factory=CaptureConfig, description="音声認識設定")
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig, description="音声合成設定")
    session: SessionConfig = Field(default_factory=SessionConfig, description="セッション設定")

    # ロギング
    log_dir: str = Field(default="logs", description="ログ出力ディレクトリ")
    log_level: str = Field(default="INFO", description="ログレベル")

    @property
    def uses_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


def load_config(**overrides) -> AppConfig:
    """
    .env を読み込んだうえで AppConfig を生成

    Args:
        **overrides: 環境変数より優先する設定値

    Returns:
        AppConfig インスタンス
    """
    load_dotenv()
    return AppConfig(**overrides)
