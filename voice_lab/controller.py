"""
ボイスセッション・ターンテイキングコントローラー

音声認識（CaptureService）、会話バックエンド（TutorBackend）、
音声合成（SynthesisService）を1つの状態機械で順序付け、
ハンズフリーの会話ループを実現します。

状態遷移:
    IDLE --(タップ / 自動モードの再開)--> LISTENING
    LISTENING --(発話認識)--> PROCESSING
    LISTENING --(no-speech / エラー / 結果なしで終了)--> IDLE
    PROCESSING --(応答受信)--> SPEAKING
    PROCESSING --(バックエンド・保存エラー)--> IDLE
    SPEAKING --(再生完了)--> LISTENING（自動モード） / IDLE
    IDLE以外 --(再タップ)--> IDLE（手動割り込み）

排他制御:
    音声認識と音声合成が同時に動作しないよう、どちらかを開始する前に
    必ず両方を停止します（_stop_media）。全てのコールバックは
    イベントループ上で呼ばれ、常にこのオブジェクトの現在の状態を参照します。
"""

import asyncio
import logging
from typing import Callable, List, Optional, Sequence

from voice_lab.backend import TutorBackend
from voice_lab.errors import BackendError, CaptureError, PersistenceError
from voice_lab.models import EnrichmentContext, Role, UserProfile, Utterance
from voice_lab.session_store import VoiceSessionStore
from voice_lab.speech import NO_SPEECH, CaptureService, SynthesisService, select_voice
from voice_lab.state_machine import ControllerState, StateTransition

logger = logging.getLogger(__name__)

BACKEND_FAILURE_MESSAGE = "Science Buddy couldn't answer right now. Tap the mic to try again."
PERSISTENCE_FAILURE_MESSAGE = "Couldn't save this conversation. Tap the mic to try again."
CAPTURE_FAILURE_MESSAGE = "Voice recognition is not available. Check your microphone."


def _log_notification(message: str, level: str = "info"):
    logger.log(logging.ERROR if level == "error" else logging.INFO, f"[notify:{level}] {message}")


class VoiceSessionController:
    """
    ターンテイキング状態機械

    Attributes:
        state (ControllerState): 現在の状態
        store (VoiceSessionStore): セッションストア
        backend (TutorBackend): 会話バックエンド
        capture (CaptureService): 音声認識サービス
        synthesis (SynthesisService): 音声合成サービス
        profile (UserProfile): 生徒プロフィール（付加情報）
        voice_preferences (list[str]): 読み上げ音声の優先リスト
        rate (float): 話速倍率
        pitch (float): ピッチ倍率
        no_speech_idle_delay (float): 自動モードで no-speech 後に IDLE に戻すまでの時間（秒）
        notify (callable): (message, level) ユーザー向け通知
        on_state_change (callable): (old_state, new_state) 状態変化の通知
    """

    def __init__(self, store: VoiceSessionStore, backend: TutorBackend,
                 capture: CaptureService, synthesis: SynthesisService,
                 profile: Optional[UserProfile] = None,
                 voice_preferences: Sequence[str] = (),
                 rate: float = 1.05, pitch: float = 1.05,
                 auto_mode: bool = True, no_speech_idle_delay: float = 0.5,
                 notify: Optional[Callable[[str, str], None]] = None,
                 on_state_change: Optional[Callable[[ControllerState, ControllerState], None]] = None):
        self.logger = logging.getLogger(__name__)
        self.state = ControllerState.IDLE
        self.store = store
        self.backend = backend
        self.capture = capture
        self.synthesis = synthesis
        self.profile = profile or store.profile
        self.voice_preferences = list(voice_preferences)
        self.rate = rate
        self.pitch = pitch
        self.no_speech_idle_delay = no_speech_idle_delay
        self.notify = notify or _log_notification
        self.on_state_change = on_state_change

        self._auto_mode = auto_mode
        self._epoch = 0                 # 状態遷移ごとに増加（遅延処理の競合検出用）
        self._capture_cycle = None      # 現在の認識サイクルID
        self._playback = None           # 現在の再生ID
        self._turn_token = 0            # 最新ターンの識別子
        self._no_speech_handle = None   # no-speech 後の遅延IDLE
        self._voice_id = None
        self._background_tasks = set()

        # サービスのコールバックを接続
        self.capture.on_start = self.handle_capture_start
        self.capture.on_result = self.handle_capture_result
        self.capture.on_error = self.handle_capture_error
        self.capture.on_end = self.handle_capture_end
        self.synthesis.on_start = self.handle_synthesis_start
        self.synthesis.on_end = self.handle_synthesis_end
        self.synthesis.on_error = self.handle_synthesis_error

    # ================================================================================
    # 状態管理
    # ================================================================================

    @property
    def auto_mode(self) -> bool:
        return self._auto_mode

    def set_auto_mode(self, enabled: bool):
        self._auto_mode = enabled
        self.logger.info(f"Seamless mode {'on' if enabled else 'off'}")

    def set_state(self, new_state: ControllerState) -> bool:
        """
        状態遷移（検証付き）

        Args:
            new_state: 遷移先の状態

        Returns:
            True: 遷移した（または既にその状態）, False: 不正な遷移のため拒否

        Note:
            状態遷移が不正な場合は警告ログを出力し、遷移を行いません。
        """
        if new_state == self.state:
            return True

        if not StateTransition.is_valid_transition(self.state, new_state):
            allowed = [s.name for s in StateTransition.get_allowed_transitions(self.state)]
            self.logger.warning(
                f"Invalid state transition: {self.state.name} → {new_state.name} "
                f"(allowed: {allowed})"
            )
            return False

        old_state = self.state
        self.state = new_state
        self._epoch += 1
        self.logger.info(f"State transition: {old_state.name} → {new_state.name}")
        if self.on_state_change:
            self.on_state_change(old_state, new_state)
        return True

    # ================================================================================
    # セッション操作（サイドバー）
    # ================================================================================

    async def load(self, initial_session_id: Optional[str] = None):
        """
        セッション一覧を読み込み、開始セッションを決定

        Args:
            initial_session_id: 再開するセッションID（省略時は新しい下書き）
        """
        await self.store.load(initial_session_id)
        await self._resolve_voice()
        self.set_state(ControllerState.IDLE)

    async def _resolve_voice(self):
        try:
            voices = await self.synthesis.list_voices()
        except Exception as e:
            self.logger.warning(f"Could not list synthesis voices: {e}")
            return
        voice = select_voice(voices, self.voice_preferences)
        self._voice_id = getattr(voice, "id", None) if voice else None
        if voice:
            self.logger.info(f"Selected voice: {getattr(voice, 'name', self._voice_id)}")

    def switch_session(self, session_id: str) -> bool:
        """
        アクティブなセッションを切り替え

        Returns:
            True: 切り替えた, False: 既にアクティブ（何もしない）

        Raises:
            KeyError: 一覧に無いセッションIDの場合
        """
        if not self.store.switch(session_id):
            return False
        self._reset_to_idle()
        return True

    def new_session(self) -> str:
        """新しい下書きセッションを開始し、そのIDを返す"""
        session_id = self.store.new_draft()
        self._reset_to_idle()
        return session_id

    async def delete_session(self, session_id: str) -> bool:
        """
        セッションを削除

        Returns:
            True: 削除した, False: 保存先のエラーで削除できなかった
        """
        try:
            replaced_active = await self.store.delete(session_id)
        except PersistenceError as e:
            self.logger.error(f"Failed to delete session {session_id}: {e}")
            self.notify("Couldn't delete that conversation.", "error")
            return False
        if replaced_active:
            self._reset_to_idle()
        return True

    # ================================================================================
    # マイクボタン
    # ================================================================================

    def tap(self):
        """
        マイクボタン（オーブ）のタップ

        IDLE なら聞き取りを開始し、それ以外なら手動割り込みを行います。
        """
        if self.state == ControllerState.IDLE:
            self.start_listening()
        else:
            self.interrupt()

    def interrupt(self):
        """
        手動割り込み

        音声合成と音声認識を無条件に停止して IDLE に戻ります。
        進行中のバックエンド呼び出しはキャンセルしません（応答は保存のみ行い、読み上げません）。
        """
        self.logger.info("Manual interrupt")
        self._reset_to_idle()

    def start_listening(self):
        """
        音声認識を開始（IDLE / SPEAKING → LISTENING）

        Note:
            既存の認識サイクルと再生は開始前に必ず停止します。
        """
        if self.state == ControllerState.LISTENING:
            return
        if not StateTransition.is_valid_transition(self.state, ControllerState.LISTENING):
            self.logger.warning(f"Cannot start listening while {self.state.name}")
            return

        self._stop_media()
        try:
            cycle = self.capture.start()
        except CaptureError as e:
            self.logger.error(f"Failed to start speech capture: {e}")
            self.notify(CAPTURE_FAILURE_MESSAGE, "error")
            self.set_state(ControllerState.IDLE)
            return

        self._capture_cycle = cycle
        self.set_state(ControllerState.LISTENING)

    def _stop_media(self):
        self.synthesis.stop()
        self.capture.stop()
        self._playback = None
        self._capture_cycle = None
        if self._no_speech_handle:
            self._no_speech_handle.cancel()
            self._no_speech_handle = None

    def _reset_to_idle(self):
        self._stop_media()
        self.set_state(ControllerState.IDLE)

    # ================================================================================
    # 音声認識コールバック
    # ================================================================================

    def handle_capture_start(self, cycle):
        self.logger.debug(f"Capture cycle {cycle} is listening")

    def handle_capture_result(self, cycle, transcript: str):
        """
        発話認識コールバック

        空でない認識結果を受け取ったら PROCESSING に遷移し、ターンを開始します。
        空の結果は無視します（続く終了通知で IDLE に戻ります）。
        """
        if cycle != self._capture_cycle or self.state != ControllerState.LISTENING:
            self.logger.debug(f"Ignoring result from stale capture cycle {cycle}")
            return

        text = (transcript or "").strip()
        if not text:
            return

        self.logger.info(f"User: {text}")
        self._capture_cycle = None
        self._begin_turn(text)

    def handle_capture_error(self, cycle, code: str):
        """
        音声認識エラーコールバック

        Note:
            "no-speech" かつ自動モードの場合は少し待ってから IDLE に戻します。
            待機中に他の遷移が起きていた場合は何もしません。
        """
        if cycle != self._capture_cycle:
            return

        self._capture_cycle = None
        if code == NO_SPEECH and self._auto_mode:
            self.logger.info("No speech detected")
            epoch = self._epoch
            loop = asyncio.get_running_loop()
            self._no_speech_handle = loop.call_later(
                self.no_speech_idle_delay, self._idle_after_no_speech, epoch
            )
        else:
            self.logger.warning(f"Speech capture error: {code}")
            self.set_state(ControllerState.IDLE)

    def _idle_after_no_speech(self, epoch: int):
        self._no_speech_handle = None
        if epoch == self._epoch and self.state == ControllerState.LISTENING:
            self.set_state(ControllerState.IDLE)

    def handle_capture_end(self, cycle):
        """認識サイクル終了コールバック（結果もエラーも無く終わった場合は IDLE へ）"""
        if cycle != self._capture_cycle:
            return
        self._capture_cycle = None
        if self.state == ControllerState.LISTENING:
            self.set_state(ControllerState.IDLE)

    # ================================================================================
    # ターン処理
    # ================================================================================

    def _begin_turn(self, text: str):
        self.set_state(ControllerState.PROCESSING)
        self._turn_token += 1
        # 履歴はターン開始時点のアクティブなセッションから取る
        history = list(self.store.messages)
        self._spawn(self._guarded_turn(text, self.store.active_id, history, self._turn_token))

    async def _guarded_turn(self, text: str, session_id: str, history: List[Utterance], token: int):
        # 想定外の例外でも PROCESSING に留まらないようにする
        try:
            await self._run_turn(text, session_id, history, token)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._fail_turn(token, BACKEND_FAILURE_MESSAGE, e)

    async def _run_turn(self, text: str, session_id: str, history: List[Utterance], token: int):
        """
        1ターン分の処理（PROCESSING 中）

        1. ユーザー発話を追加して保存（下書きなら行を作成）
        2. 最初の返答ならタイトル生成をバックグラウンドで開始
        3. 学習状況を取得してバックエンドに応答を要求
        4. アシスタント発話を追加して保存
        5. 割り込みが無ければ読み上げ

        Args:
            text: 認識されたユーザー発話
            session_id: ターン開始時のアクティブなセッションID
            history: ターン開始時点の発話列
            token: ターン識別子
        """
        with_user = history + [Utterance.create(Role.USER, text)]

        try:
            await self.store.persist(session_id, with_user)
        except PersistenceError as e:
            self._fail_turn(token, PERSISTENCE_FAILURE_MESSAGE, e)
            return

        if len(with_user) == 2:
            self._spawn(self._generate_title(session_id, text))

        stats = None
        try:
            stats = await self.store.repository.fetch_user_stats(self.store.user_id)
        except PersistenceError as e:
            self.logger.warning(f"Live stats unavailable, continuing without them: {e}")

        context = EnrichmentContext(name=self.profile.name, interests=self.profile.interests, stats=stats)
        prior_turns = [(m.role, m.text) for m in history]

        try:
            reply = await self.backend.reply(text, prior_turns, context)
        except BackendError as e:
            self._fail_turn(token, BACKEND_FAILURE_MESSAGE, e)
            return

        if session_id != self.store.active_id:
            self.logger.info(f"Discarding reply for inactive session {session_id}")
            return
        if token != self._turn_token:
            self.logger.info("Discarding reply superseded by a newer turn")
            return

        self.logger.info(f"Assistant: {reply}")
        final = with_user + [Utterance.create(Role.ASSISTANT, reply)]
        try:
            await self.store.persist(session_id, final)
        except PersistenceError as e:
            self._fail_turn(token, PERSISTENCE_FAILURE_MESSAGE, e)
            return

        if (self.state != ControllerState.PROCESSING or token != self._turn_token
                or session_id != self.store.active_id):
            self.logger.info("Turn was interrupted, reply saved without speaking")
            return

        self._speak(reply)

    def _fail_turn(self, token: int, message: str, exc: Exception):
        self.logger.error(f"Turn failed: {exc}")
        self.notify(message, "error")
        if token == self._turn_token and self.state == ControllerState.PROCESSING:
            self.set_state(ControllerState.IDLE)

    def _speak(self, text: str):
        self.capture.stop()
        self._capture_cycle = None
        self.set_state(ControllerState.SPEAKING)
        self._playback = self.synthesis.speak(text, voice_id=self._voice_id, rate=self.rate, pitch=self.pitch)

    async def _generate_title(self, session_id: str, text: str):
        title = await self.backend.generate_title(text)
        if not title:
            return
        try:
            await self.store.rename(session_id, title)
            self.logger.info(f"Session {session_id} titled '{title}'")
        except PersistenceError as e:
            self.logger.warning(f"Failed to save title for session {session_id}: {e}")

    # ================================================================================
    # 音声合成コールバック
    # ================================================================================

    def handle_synthesis_start(self, playback):
        self.logger.debug(f"Playback {playback} started")

    def handle_synthesis_end(self, playback):
        """再生完了コールバック（自動モードなら聞き取りを再開）"""
        if playback != self._playback:
            return
        self._playback = None
        if self.state != ControllerState.SPEAKING:
            return
        if self._auto_mode:
            self.start_listening()
        else:
            self.set_state(ControllerState.IDLE)

    def handle_synthesis_error(self, playback, exc):
        if playback != self._playback:
            return
        self._playback = None
        self.logger.error(f"Speech synthesis error: {exc}")
        if self.state == ControllerState.SPEAKING:
            self.set_state(ControllerState.IDLE)

    # ================================================================================
    # バックグラウンドタスク
    # ================================================================================

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task):
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            self.logger.error(f"Background task failed: {exc}", exc_info=exc)

    async def wait_idle_tasks(self):
        """実行中のターン・タイトル生成タスクの完了を待つ"""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def close(self):
        """
        コントローラーの終了処理

        音声認識・合成を停止し、バックグラウンドタスクの完了を待ちます。
        """
        self.logger.info("Closing voice session controller...")
        self._reset_to_idle()
        await self.wait_idle_tasks()
