"""Vendor-neutral instructions returned to the telephony gateway on the turn-based path."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class GatewayAction:
    verb: str  # say | play | gather | hangup | stream
    text: Optional[str] = None
    url: Optional[str] = None
    timeout: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"verb": self.verb}
        if self.text is not None:
            data["text"] = self.text
        if self.url is not None:
            data["url"] = self.url
        if self.timeout is not None:
            data["timeout"] = self.timeout
        return data


@dataclass
class GatewayInstruction:
    actions: List[GatewayAction] = field(default_factory=list)

    def say(self, text: str) -> "GatewayInstruction":
        self.actions.append(GatewayAction("say", text=text))
        return self

    def play(self, url: str) -> "GatewayInstruction":
        self.actions.append(GatewayAction("play", url=url))
        return self

    def speak(self, text: str, audio_url: Optional[str]) -> "GatewayInstruction":
        """Play pre-synthesized audio when available, else let the gateway speak the text."""
        if audio_url:
            return self.play(audio_url)
        return self.say(text)

    def gather(self, timeout: int) -> "GatewayInstruction":
        self.actions.append(GatewayAction("gather", timeout=timeout))
        return self

    def hangup(self) -> "GatewayInstruction":
        self.actions.append(GatewayAction("hangup"))
        return self

    def stream(self, url: str) -> "GatewayInstruction":
        """Connect the call audio to a media-stream websocket."""
        self.actions.append(GatewayAction("stream", url=url))
        return self

    @property
    def verbs(self) -> List[str]:
        return [action.verb for action in self.actions]

    @property
    def ends_call(self) -> bool:
        return "hangup" in self.verbs

    def to_dict(self) -> Dict[str, Any]:
        return {"actions": [action.to_dict() for action in self.actions]}
