"""dingtalk-connector - DingTalk Stream channel with AI Card streaming replies."""

__version__ = "0.1.0"
__logo__ = "🔔"
