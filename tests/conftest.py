import os
from typing import List

import pytest

ADDON_LUA = """
GuildManagerBridgeDB = {
	["settings"] = {
		["debug"] = false,
	},
	["keys"] = {
		["Foo-Silvermoon"] = {
			["level"] = 14,
			["dungeonName"] = "Ara-Kara",
			["timestamp"] = 1718000000,
		},
		["Bar-Argent Dawn"] = {
			["level"] = 10,
			["dungeonName"] = "The Stonevault",
			["source"] = "addon",
		},
		["Baz-Aggra (Português)"] = { level = 7, dungeonName = "Grim Batol" },
		["NoLevel-Silvermoon"] = { ["dungeonName"] = "Ara-Kara" },
		["NoDungeon-Silvermoon"] = { ["level"] = 5 },
		["ZeroLevel-Silvermoon"] = { ["level"] = 0, ["dungeonName"] = "Mists" },
		["StrLevel-Silvermoon"] = { ["level"] = "12", ["dungeonName"] = "Mists" },
		["NoRealm"] = { ["level"] = 3, ["dungeonName"] = "Mists" },
		["Broken-Realm" = { ["level"] = 9, ["dungeonName"] = "Mists" },
		["count"] = 3,
	},
	["other"] = {
		["Qux-Silvermoon"] = { ["level"] = 20, ["dungeonName"] = "Siege" },
	},
}
"""

BIGWIGS_LUA = """
BigWigs3DB = {
	["namespaces"] = {
	},
	["myKeystones"] = {
		["Player-1305-0ABC"] = {
			["name"] = "Foo",
			["realm"] = "Kazzak",
			["keyLevel"] = 12,
			["keyMap"] = 503,
		},
		["Player-1305-0DEF"] = {
			["name"] = "Empty",
			["realm"] = "Kazzak",
			["keyLevel"] = 0,
			["keyMap"] = 0,
		},
	},
}
"""

ALTEREGO_LUA = """
AlterEgoDB = {
	["global"] = {
		["characters"] = {
			["Player-1305-0ABC"] = {
				["info"] = {
					["name"] = "Foo",
					["realm"] = "Twisting Nether",
				},
				["mythicplus"] = {
					["keystone"] = {
						["mapId"] = 505,
						["level"] = 8,
					},
				},
			},
			["Player-1305-0XYZ"] = {
				["info"] = {
					["name"] = "Nokey",
					["realm"] = "Kazzak",
				},
				["mythicplus"] = {
					["keystone"] = {
						["mapId"] = 0,
						["level"] = 0,
					},
				},
			},
		},
	},
}
"""

BRIDGE_ENV_VARS = [
    "BACKEND_URL",
    "BACKEND_URLS",
    "BRIDGE_MODE",
    "HOST_COMMAND",
    "WOW_PATH",
    "KEYSTONE_SOURCES",
    "HTTP_TIMEOUT",
    "SYNC_MAX_ATTEMPTS",
    "FULL_SCAN_INTERVAL",
    "PATH_RETRY_INTERVAL",
    "DEBOUNCE_SECONDS",
    "SYNC_LOG_FILE",
]


class FakeResponse:
    def __init__(self, status_code: int = 200, body=None, text: str = ""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeSession:
    def __init__(self, responses: List):
        self.responses = list(responses)
        self.calls = []
        self.headers = {}

    def post(self, url, json=None, timeout=None):
        self.calls.append({"url": url, "json": json, "timeout": timeout})
        r = self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r


class FakeObserver:
    def __init__(self):
        self.scheduled = []
        self.unscheduled = []
        self.started = False
        self.stopped = False

    def schedule(self, handler, path, recursive=False):
        self.handler = handler
        self.scheduled.append(path)
        return path

    def unschedule(self, watch):
        self.unscheduled.append(watch)

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        return None


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in BRIDGE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SYNC_LOG_FILE", str(tmp_path / "logs" / "sync-debug.log"))
    return monkeypatch


@pytest.fixture
def wow_tree(tmp_path):
    """Árbol WoW mínimo con dos cuentas; devuelve (install_root, [sv_dirs])."""
    install = tmp_path / "World of Warcraft"
    account_root = install / "_retail_" / "WTF" / "Account"
    sv_dirs = []
    for account in ("ACCOUNT1", "ACCOUNT2"):
        sv = account_root / account / "SavedVariables"
        sv.mkdir(parents=True)
        sv_dirs.append(sv)
    # Carpeta global: no es una cuenta
    (account_root / "SavedVariables").mkdir()
    return install, sv_dirs


def write(path, text: str) -> str:
    os.makedirs(os.path.dirname(str(path)), exist_ok=True)
    with open(str(path), "w", encoding="utf-8") as f:
        f.write(text)
    return str(path)
