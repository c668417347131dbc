"""
音声認識・音声合成アダプター

SpeechRecognition（マイク入力 + Google Web Speech）と pyttsx3（ローカルTTS）を
コールバックベースのサービスとしてラップします。

並行処理の責務:
どちらのライブラリもブロッキングAPIのため、実処理はワーカースレッドで実行し、
結果はイベントループ上でコールバックとして通知します。

スレッドモデル:
1. **キャプチャ用スレッド** (認識サイクルごとに1つ):
   - recognizer.listen を短い間隔で繰り返し、マイクから1発話分の音声を取得
   - loop.call_soon_threadsafe でイベントループに受け渡し
2. **TTSワーカースレッド** (ThreadPoolExecutor, max_workers=1):
   - pyttsx3エンジンの生成と読み上げはこのスレッドで行う
   - 例外として、再生の中断（engine.stop）はasyncioスレッドから呼ぶ
3. **asyncioスレッド**:
   - コールバック（on_start / on_result / on_error / on_end）は全てここで呼ばれる

重要な制約:
- コールバックには開始時に発行したサイクル（再生）IDが渡されます
- stop() 済み、または新しいサイクルに置き換えられたIDのイベントは通知されません
"""

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Sequence

import pyttsx3
import speech_recognition as sr

from voice_lab.errors import CaptureBusyError, CaptureError, SynthesisError

logger = logging.getLogger(__name__)

# 音声認識エラー種別
NO_SPEECH = "no-speech"
NETWORK = "network"
AUDIO_CAPTURE = "audio-capture"


class CaptureService(ABC):
    """
    音声認識サービスの抽象基底

    Attributes:
        on_start (callable): (cycle_id) 認識開始時
        on_result (callable): (cycle_id, transcript) 発話認識時
        on_error (callable): (cycle_id, code) エラー時（code は "no-speech" など）
        on_end (callable): (cycle_id) サイクル終了時（結果・エラー・停止のいずれでも1回）
    """

    def __init__(self, on_start=None, on_result=None, on_error=None, on_end=None):
        self.on_start = on_start
        self.on_result = on_result
        self.on_error = on_error
        self.on_end = on_end

    @abstractmethod
    def start(self) -> int:
        """
        認識サイクルを開始

        Returns:
            サイクルID

        Raises:
            CaptureBusyError: 既にサイクルが動作中の場合
            CaptureError: マイクを開けない場合
        """

    @abstractmethod
    def stop(self) -> None:
        """動作中のサイクルを停止（動作中でなければ何もしない）"""

    @property
    @abstractmethod
    def is_active(self) -> bool:
        pass

    def _emit(self, callback, *args):
        if callback:
            callback(*args)


class SynthesisService(ABC):
    """
    音声合成サービスの抽象基底

    Attributes:
        on_start (callable): (playback_id) 再生開始時
        on_end (callable): (playback_id) 再生完了時
        on_error (callable): (playback_id, exc) 再生失敗時
    """

    def __init__(self, on_start=None, on_end=None, on_error=None):
        self.on_start = on_start
        self.on_end = on_end
        self.on_error = on_error

    @abstractmethod
    def speak(self, text: str, voice_id: Optional[str] = None, rate: float = 1.0, pitch: float = 1.0) -> int:
        """
        テキストを読み上げ

        Returns:
            再生ID
        """

    @abstractmethod
    def stop(self) -> None:
        """再生を中断（on_end は通知されない）"""

    @property
    @abstractmethod
    def is_active(self) -> bool:
        pass

    async def list_voices(self) -> list:
        return []

    def _emit(self, callback, *args):
        if callback:
            callback(*args)


def _voice_languages(voice) -> list:
    languages = []
    for lang in getattr(voice, "languages", None) or []:
        if isinstance(lang, bytes):
            # espeakドライバは先頭に優先度バイトを付ける
            lang = lang.decode("utf-8", errors="ignore").lstrip("\x05")
        languages.append(str(lang).lower())
    return languages


def select_voice(voices: Sequence, preferred_names: Sequence[str]):
    """
    優先リストに従って読み上げ音声を選択

    選択順:
        1. preferred_names の順に、名前に部分一致する音声
        2. gender が female の音声
        3. 言語が英語（en）の音声
        4. 先頭の音声

    Args:
        voices: pyttsx3 の Voice オブジェクト（name, gender, languages, id）のリスト
        preferred_names: 優先する音声名

    Returns:
        選択された音声（voices が空なら None）

    Examples:
        >>> select_voice([], ["Samantha"]) is None
        True
    """
    voices = list(voices)
    if not voices:
        return None

    for preferred in preferred_names:
        for voice in voices:
            if preferred.lower() in (getattr(voice, "name", "") or "").lower():
                return voice

    for voice in voices:
        if (getattr(voice, "gender", None) or "").lower() == "female":
            return voice

    for voice in voices:
        if any(lang.startswith("en") for lang in _voice_languages(voice)):
            return voice

    return voices[0]


class MicrophoneCapture(CaptureService):
    """
    SpeechRecognition ベースのマイク音声認識

    1サイクル = 1発話。キャプチャ用スレッドで recognizer.listen を短い間隔で
    繰り返し、発話を1つ取得したら即座にマイクを閉じて Google Web Speech API で
    文字起こしします。

    no_speech_timeout 秒以内に発話が始まらなければ "no-speech" エラーで終了します。
    期限は発話の開始待ちの間だけ確認するため、期限の直前に話し始めた発話も
    最後まで取得されます。

    Attributes:
        recognizer (sr.Recognizer): 認識器
        language (str): 認識言語
        no_speech_timeout (float): 発話開始までの無音タイムアウト（秒）
        phrase_time_limit (float): 1発話の最大長（秒）
        ambient_duration (float): ノイズキャリブレーション時間（秒）
        device_index (int): マイクのデバイスインデックス
    """

    # 発話開始を待つ1回あたりの時間（秒）。stop() はこの間隔で反映される
    LISTEN_POLL_INTERVAL = 1.0

    def __init__(self, language: str = "en-US", no_speech_timeout: float = 6.0,
                 phrase_time_limit: float = 15.0, ambient_duration: float = 0.5,
                 device_index: Optional[int] = None, recognizer: Optional[sr.Recognizer] = None,
                 **callbacks):
        super().__init__(**callbacks)
        self.recognizer = recognizer or sr.Recognizer()
        self.language = language
        self.no_speech_timeout = no_speech_timeout
        self.phrase_time_limit = phrase_time_limit
        self.ambient_duration = ambient_duration
        self.device_index = device_index
        self.logger = logging.getLogger(__name__)

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._cycle = 0
        self._active_cycle: Optional[int] = None
        self._stop_event: Optional[threading.Event] = None

    @classmethod
    def from_config(cls, capture_config) -> "MicrophoneCapture":
        return cls(
            language=capture_config.language,
            no_speech_timeout=capture_config.no_speech_timeout,
            phrase_time_limit=capture_config.phrase_time_limit,
            ambient_duration=capture_config.ambient_duration,
            device_index=capture_config.device_index,
        )

    @property
    def is_active(self) -> bool:
        return self._active_cycle is not None

    async def calibrate(self) -> None:
        """
        環境ノイズに合わせて認識しきい値を調整

        Raises:
            CaptureError: マイクを開けない場合
        """
        def _calibrate():
            with sr.Microphone(device_index=self.device_index) as source:
                self.recognizer.adjust_for_ambient_noise(source, duration=self.ambient_duration)

        try:
            await asyncio.get_running_loop().run_in_executor(None, _calibrate)
        except Exception as e:
            raise CaptureError(AUDIO_CAPTURE, f"Microphone unavailable: {e}") from e
        self.logger.info(f"Microphone calibrated (energy_threshold={self.recognizer.energy_threshold:.0f})")

    def start(self) -> int:
        if self._active_cycle is not None:
            raise CaptureBusyError()

        loop = asyncio.get_running_loop()
        try:
            microphone = sr.Microphone(device_index=self.device_index)
        except Exception as e:
            raise CaptureError(AUDIO_CAPTURE, f"Failed to open microphone: {e}") from e

        self._loop = loop
        self._cycle += 1
        cycle = self._cycle
        self._stop_event = threading.Event()
        self._active_cycle = cycle

        worker = threading.Thread(
            target=self._listen_worker,
            args=(cycle, microphone, self._stop_event, loop),
            name=f"capture-{cycle}",
            daemon=True,
        )
        worker.start()
        loop.call_soon(self._emit, self.on_start, cycle)
        self.logger.debug(f"Capture cycle {cycle} started")
        return cycle

    def stop(self) -> None:
        if self._active_cycle is None:
            return
        cycle = self._active_cycle
        self._stop_event.set()
        self._active_cycle = None
        self.logger.debug(f"Capture cycle {cycle} stopped")
        self._loop.call_soon(self._emit, self.on_end, cycle)

    def _listen_worker(self, cycle: int, microphone, stop_event: threading.Event,
                       loop: asyncio.AbstractEventLoop):
        # キャプチャ用スレッド。結果は call_soon_threadsafe でイベントループへ渡す
        deadline = time.monotonic() + self.no_speech_timeout
        try:
            with microphone as source:
                while not stop_event.is_set():
                    try:
                        audio = self.recognizer.listen(
                            source,
                            timeout=self.LISTEN_POLL_INTERVAL,
                            phrase_time_limit=self.phrase_time_limit,
                        )
                    except sr.WaitTimeoutError:
                        if time.monotonic() >= deadline:
                            self._post(loop, stop_event, self._finish, cycle, None, NO_SPEECH)
                            return
                        continue
                    self._post(loop, stop_event, self._on_audio, cycle, audio)
                    return
        except Exception as e:
            self.logger.error(f"Microphone capture failed: {e}")
            self._post(loop, stop_event, self._finish, cycle, None, AUDIO_CAPTURE)

    @staticmethod
    def _post(loop, stop_event: threading.Event, callback, *args):
        if not stop_event.is_set():
            loop.call_soon_threadsafe(callback, *args)

    def _on_audio(self, cycle: int, audio):
        if cycle != self._active_cycle:
            return
        self._loop.create_task(self._transcribe(cycle, audio))

    async def _transcribe(self, cycle: int, audio):
        try:
            transcript = await self._loop.run_in_executor(
                None, lambda: self.recognizer.recognize_google(audio, language=self.language)
            )
        except sr.UnknownValueError:
            self._finish(cycle, error=NO_SPEECH)
            return
        except sr.RequestError as e:
            self.logger.error(f"Speech recognition request failed: {e}")
            self._finish(cycle, error=NETWORK)
            return
        self._finish(cycle, transcript=transcript)

    def _finish(self, cycle: int, transcript: Optional[str] = None, error: Optional[str] = None):
        if cycle != self._active_cycle:
            self.logger.debug(f"Dropping result of stopped capture cycle {cycle}")
            return
        self._active_cycle = None
        if error:
            self._emit(self.on_error, cycle, error)
        else:
            self._emit(self.on_result, cycle, transcript or "")
        self._emit(self.on_end, cycle)


class Pyttsx3Synthesis(SynthesisService):
    """
    pyttsx3 ベースの音声合成

    エンジンの生成と読み上げ（say / runAndWait）は専用のワーカースレッド（1スレッド）で行います。
    rate はエンジン標準の話速に対する倍率として適用します。

    Note:
        - pyttsx3 にはピッチのプロパティが無いため、pitch は受け付けますが適用されません。
        - stop() だけは再生中の runAndWait を中断するため、イベントループのスレッドから
          engine.stop() を呼びます。
    """

    def __init__(self, driver_name: Optional[str] = None, **callbacks):
        super().__init__(**callbacks)
        self.driver_name = driver_name
        self.logger = logging.getLogger(__name__)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tts")
        self._engine = None
        self._base_rate = 200
        self._playback = 0
        self._active_playback: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self._active_playback is not None

    def _get_engine(self):
        # 生成はTTSワーカースレッドで行う（中断用の engine.stop() のみ別スレッドから呼ばれる）
        if self._engine is None:
            self._engine = pyttsx3.init(self.driver_name)
            self._base_rate = self._engine.getProperty("rate")
        return self._engine

    async def list_voices(self) -> list:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: list(self._get_engine().getProperty("voices")))

    def _speak_blocking(self, text: str, voice_id: Optional[str], rate: float):
        engine = self._get_engine()
        if voice_id:
            engine.setProperty("voice", voice_id)
        engine.setProperty("rate", int(self._base_rate * rate))
        engine.say(text)
        engine.runAndWait()

    def speak(self, text: str, voice_id: Optional[str] = None, rate: float = 1.0, pitch: float = 1.0) -> int:
        # 再生中の音声は中断してから開始
        self.stop()

        loop = asyncio.get_running_loop()
        self._playback += 1
        playback = self._playback
        self._active_playback = playback

        future = loop.run_in_executor(self._executor, self._speak_blocking, text, voice_id, rate)
        future.add_done_callback(lambda f: self._on_done(playback, f))
        loop.call_soon(self._emit, self.on_start, playback)
        self.logger.debug(f"Playback {playback} started ({len(text)} chars, rate={rate}, pitch={pitch})")
        return playback

    def _on_done(self, playback: int, future):
        if playback != self._active_playback:
            return
        self._active_playback = None
        if future.cancelled():
            return
        exc = future.exception()
        if exc:
            error = SynthesisError(f"Playback {playback} failed: {exc}")
            error.__cause__ = exc
            self.logger.error(str(error))
            self._emit(self.on_error, playback, error)
        else:
            self._emit(self.on_end, playback)

    def stop(self) -> None:
        if self._active_playback is None:
            return
        self.logger.debug(f"Playback {self._active_playback} stopped")
        self._active_playback = None
        if self._engine is not None:
            self._engine.stop()

    def shutdown(self):
        self.stop()
        self._executor.shutdown(wait=False)
