"""
Sandboxed execution of the script fragments embedded in rules.

Scripts run in a fresh QuickJS context per call with a time and memory limit.
The only host surface is the variable store, a few hashing/encoding helpers
and a log sink; no filesystem, network or process access is bound.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import quickjs

logger = logging.getLogger(__name__)

DEFAULT_SCRIPT_TIMEOUT = 5.0
DEFAULT_MEMORY_LIMIT = 64 * 1024 * 1024

_PLACEHOLDER_RE = re.compile(r'\{\{\s*([A-Za-z_][\w.]*)\s*\}\}')

# Rewrites for Rhino-only syntax that shows up in real rule files
RHINO_REWRITES = [
    (re.compile(r'for\s+each\s*\(\s*((?:var|let|const)\s+)?(\w+)\s+in\s+'), r'for (\1\2 of '),
    (re.compile(r'new\s+java\.lang\.String\s*\('), 'String('),
    (re.compile(r'\(\s*java\.lang\.String\s*\)\s*'), "'' + "),
]

PRELUDE = r"""
var __puts = {}, __logs = [];
var __B64 = 'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/';

function __copy(v) {
  var s = JSON.stringify(v);
  return s === undefined ? null : JSON.parse(s);
}

function __utf8Bytes(s) {
  var bin = unescape(encodeURIComponent(String(s))), out = [];
  for (var i = 0; i < bin.length; i++) out.push(bin.charCodeAt(i));
  return out;
}

function __utf8String(bytes) {
  var bin = '';
  for (var i = 0; i < bytes.length; i++) bin += String.fromCharCode(bytes[i]);
  try { return decodeURIComponent(escape(bin)); } catch (e) { return bin; }
}

function __hex(bytes) {
  var out = '';
  for (var i = 0; i < bytes.length; i++) out += (bytes[i] < 16 ? '0' : '') + bytes[i].toString(16);
  return out;
}

function __b64encode(s) {
  var b = __utf8Bytes(s), out = '';
  for (var i = 0; i < b.length; i += 3) {
    var n = (b[i] << 16) | ((b[i + 1] || 0) << 8) | (b[i + 2] || 0);
    out += __B64.charAt((n >> 18) & 63) + __B64.charAt((n >> 12) & 63)
      + (i + 1 < b.length ? __B64.charAt((n >> 6) & 63) : '=')
      + (i + 2 < b.length ? __B64.charAt(n & 63) : '=');
  }
  return out;
}

function __b64decode(s) {
  s = String(s).replace(/-/g, '+').replace(/_/g, '/').replace(/[^A-Za-z0-9+\/]/g, '');
  var bytes = [], acc = 0, bits = 0;
  for (var i = 0; i < s.length; i++) {
    acc = (acc << 6) | __B64.indexOf(s.charAt(i));
    bits += 6;
    if (bits >= 8) {
      bits -= 8;
      bytes.push((acc >> bits) & 0xff);
      acc &= (1 << bits) - 1;
    }
  }
  return __utf8String(bytes);
}

function __hexDecode(s) {
  var bytes = [];
  s = String(s);
  for (var i = 0; i + 1 < s.length; i += 2) bytes.push(parseInt(s.substr(i, 2), 16));
  return __utf8String(bytes);
}

// Message padding shared by the digests: 0x80, zeros, 64-bit bit length
function __pad(bytes, bigEndian) {
  var m = bytes.slice(), bitLen = bytes.length * 8, i;
  var hi = Math.floor(bitLen / 4294967296), lo = bitLen >>> 0;
  m.push(0x80);
  while (m.length % 64 !== 56) m.push(0);
  if (bigEndian) {
    for (i = 3; i >= 0; i--) m.push((hi >>> (8 * i)) & 0xff);
    for (i = 3; i >= 0; i--) m.push((lo >>> (8 * i)) & 0xff);
  } else {
    for (i = 0; i < 4; i++) m.push((lo >>> (8 * i)) & 0xff);
    for (i = 0; i < 4; i++) m.push((hi >>> (8 * i)) & 0xff);
  }
  return m;
}

function __wordsHex(words) {
  var out = '';
  for (var i = 0; i < words.length; i++) out += ('0000000' + (words[i] >>> 0).toString(16)).slice(-8);
  return out;
}

function __rotr(x, n) { return (x >>> n) | (x << (32 - n)); }

var __MD5_S = [7, 12, 17, 22, 5, 9, 14, 20, 4, 11, 16, 23, 6, 10, 15, 21];

function __md5(bytes) {
  var K = [], i, off;
  for (i = 0; i < 64; i++) K[i] = Math.floor(Math.abs(Math.sin(i + 1)) * 4294967296) | 0;
  var m = __pad(bytes, false);
  var h = [0x67452301, 0xefcdab89 | 0, 0x98badcfe | 0, 0x10325476];
  for (off = 0; off < m.length; off += 64) {
    var M = [];
    for (i = 0; i < 16; i++) {
      var j = off + 4 * i;
      M[i] = m[j] | (m[j + 1] << 8) | (m[j + 2] << 16) | (m[j + 3] << 24);
    }
    var a = h[0], b = h[1], c = h[2], d = h[3];
    for (i = 0; i < 64; i++) {
      var f, g;
      if (i < 16) { f = (b & c) | (~b & d); g = i; }
      else if (i < 32) { f = (d & b) | (~d & c); g = (5 * i + 1) % 16; }
      else if (i < 48) { f = b ^ c ^ d; g = (3 * i + 5) % 16; }
      else { f = c ^ (b | ~d); g = (7 * i) % 16; }
      var s = __MD5_S[(i >> 4) * 4 + (i % 4)];
      f = (f + a + K[i] + M[g]) | 0;
      a = d; d = c; c = b;
      b = (b + ((f << s) | (f >>> (32 - s)))) | 0;
    }
    h[0] = (h[0] + a) | 0; h[1] = (h[1] + b) | 0; h[2] = (h[2] + c) | 0; h[3] = (h[3] + d) | 0;
  }
  var out = [];
  for (i = 0; i < 16; i++) out.push((h[i >> 2] >>> (8 * (i % 4))) & 0xff);
  return __hex(out);
}

function __beWords(m, off) {
  var w = [];
  for (var i = 0; i < 16; i++) {
    var j = off + 4 * i;
    w[i] = (m[j] << 24) | (m[j + 1] << 16) | (m[j + 2] << 8) | m[j + 3];
  }
  return w;
}

function __sha1(bytes) {
  var m = __pad(bytes, true), i, off;
  var h = [0x67452301, 0xefcdab89 | 0, 0x98badcfe | 0, 0x10325476, 0xc3d2e1f0 | 0];
  for (off = 0; off < m.length; off += 64) {
    var w = __beWords(m, off);
    for (i = 16; i < 80; i++) {
      var x = w[i - 3] ^ w[i - 8] ^ w[i - 14] ^ w[i - 16];
      w[i] = (x << 1) | (x >>> 31);
    }
    var a = h[0], b = h[1], c = h[2], d = h[3], e = h[4];
    for (i = 0; i < 80; i++) {
      var f, k;
      if (i < 20) { f = (b & c) | (~b & d); k = 0x5a827999; }
      else if (i < 40) { f = b ^ c ^ d; k = 0x6ed9eba1; }
      else if (i < 60) { f = (b & c) | (b & d) | (c & d); k = 0x8f1bbcdc | 0; }
      else { f = b ^ c ^ d; k = 0xca62c1d6 | 0; }
      var t = (((a << 5) | (a >>> 27)) + f + e + k + w[i]) | 0;
      e = d; d = c; c = (b << 30) | (b >>> 2); b = a; a = t;
    }
    h[0] = (h[0] + a) | 0; h[1] = (h[1] + b) | 0; h[2] = (h[2] + c) | 0;
    h[3] = (h[3] + d) | 0; h[4] = (h[4] + e) | 0;
  }
  return __wordsHex(h);
}

// Round constants: fractional bits of the square / cube roots of the first primes
function __sha256Constants() {
  var K = [], H = [];
  for (var n = 2; K.length < 64; n++) {
    var prime = true;
    for (var d = 2; d * d <= n; d++) {
      if (n % d === 0) { prime = false; break; }
    }
    if (!prime) continue;
    if (H.length < 8) H.push((Math.pow(n, 1 / 2) * 4294967296) | 0);
    K.push((Math.pow(n, 1 / 3) * 4294967296) | 0);
  }
  return { K: K, H: H };
}

function __sha256(bytes) {
  var c256 = __sha256Constants(), K = c256.K, h = c256.H.slice();
  var m = __pad(bytes, true), i, off;
  for (off = 0; off < m.length; off += 64) {
    var w = __beWords(m, off);
    for (i = 16; i < 64; i++) {
      var s0 = __rotr(w[i - 15], 7) ^ __rotr(w[i - 15], 18) ^ (w[i - 15] >>> 3);
      var s1 = __rotr(w[i - 2], 17) ^ __rotr(w[i - 2], 19) ^ (w[i - 2] >>> 10);
      w[i] = (w[i - 16] + s0 + w[i - 7] + s1) | 0;
    }
    var a = h[0], b = h[1], c = h[2], d = h[3], e = h[4], f = h[5], g = h[6], hh = h[7];
    for (i = 0; i < 64; i++) {
      var t1 = (hh + (__rotr(e, 6) ^ __rotr(e, 11) ^ __rotr(e, 25)) + ((e & f) ^ (~e & g)) + K[i] + w[i]) | 0;
      var t2 = ((__rotr(a, 2) ^ __rotr(a, 13) ^ __rotr(a, 22)) + ((a & b) ^ (a & c) ^ (b & c))) | 0;
      hh = g; g = f; f = e; e = (d + t1) | 0; d = c; c = b; b = a; a = (t1 + t2) | 0;
    }
    h[0] = (h[0] + a) | 0; h[1] = (h[1] + b) | 0; h[2] = (h[2] + c) | 0; h[3] = (h[3] + d) | 0;
    h[4] = (h[4] + e) | 0; h[5] = (h[5] + f) | 0; h[6] = (h[6] + g) | 0; h[7] = (h[7] + hh) | 0;
  }
  return __wordsHex(h);
}

function __digest(s, alg) {
  var name = String(alg || 'md5').toLowerCase().replace(/-/g, '');
  var bytes = __utf8Bytes(s);
  if (name === 'md5') return __md5(bytes);
  if (name === 'sha1') return __sha1(bytes);
  if (name === 'sha256') return __sha256(bytes);
  throw new Error('Unsupported digest: ' + alg);
}

function __pad2(n) { return (n < 10 ? '0' : '') + n; }

var java = {
  get: function (k) {
    k = String(k);
    return Object.prototype.hasOwnProperty.call(__store, k) ? __store[k] : null;
  },
  put: function (k, v) {
    k = String(k);
    __store[k] = __puts[k] = __copy(v);
    return v;
  },
  log: function (m) { __logs.push(String(m)); return m; },
  base64Encode: function (s) { return __b64encode(s); },
  base64Decode: function (s) { return __b64decode(s); },
  md5Encode: function (s) { return __digest(s, 'md5'); },
  md5Encode16: function (s) { return __digest(s, 'md5').substring(8, 24); },
  digestHex: function (s, alg) { return __digest(s, alg); },
  encodeURI: function (s) { return encodeURIComponent(String(s)); },
  hexEncodeToString: function (s) { return __hex(__utf8Bytes(s)); },
  hexDecodeToString: function (s) { return __hexDecode(s); },
  randomUUID: function () {
    return 'xxxxxxxx-xxxx-4xxx-yxxx-xxxxxxxxxxxx'.replace(/[xy]/g, function (ch) {
      var r = Math.random() * 16 | 0;
      return (ch === 'x' ? r : (r & 3) | 8).toString(16);
    });
  },
  timeFormat: function (t) {
    var d = new Date(Number(t));
    return d.getFullYear() + '/' + __pad2(d.getMonth() + 1) + '/' + __pad2(d.getDate())
      + ' ' + __pad2(d.getHours()) + ':' + __pad2(d.getMinutes());
  }
};
java.getVar = java.get;
java.hexEncode = java.hexEncodeToString;
java.hexDecode = java.hexDecodeToString;
java.toast = java.log;
java.longToast = java.log;
var source = { get: java.get, put: java.put };
var cache = { get: java.get, put: java.put };
var get = java.get, put = java.put, Get = java.get, Put = java.put;
"""


@dataclass
class ScriptBindings:
    """Values a script can see. `store` needs snapshot() and put(key, value)."""
    store: Any
    result: Any = None
    src: str = ''
    base_url: str = ''
    book: Optional[Dict[str, Any]] = None
    chapter: Optional[Dict[str, Any]] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    js_lib: str = ''


@dataclass(frozen=True)
class ScriptOutcome:
    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ScriptSandbox(Protocol):
    def run(self, source: str, bindings: ScriptBindings) -> ScriptOutcome:
        ...


def _lookup(record: Optional[Dict[str, Any]], path: str) -> Any:
    value: Any = record
    for part in path.split('.'):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def substitute_placeholders(source: str, record: Optional[Dict[str, Any]]) -> str:
    """Replace `{{field}}` with values from the previous stage's record; unknown names stay."""
    if not record or '{{' not in source:
        return source

    def repl(m):
        value = _lookup(record, m.group(1))
        if value is None:
            return m.group(0)
        return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)

    return _PLACEHOLDER_RE.sub(repl, source)


def rhino_to_es(source: str) -> str:
    for pattern, replacement in RHINO_REWRITES:
        source = pattern.sub(replacement, source)
    return source


def _js_literal(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def _to_python(value: Any) -> Any:
    if isinstance(value, quickjs.Object):
        raw = value.json()
        return json.loads(raw) if raw else None
    return value


class QuickJsSandbox:
    """ScriptSandbox backed by the QuickJS interpreter.

    quickjs refuses calls into Python while a time limit is set, so the host
    surface lives entirely in JS: the store is injected as a snapshot and the
    script's puts and log lines are read back once evaluation has finished.
    """

    def __init__(self, timeout: float = DEFAULT_SCRIPT_TIMEOUT, memory_limit: int = DEFAULT_MEMORY_LIMIT):
        self.timeout = timeout
        self.memory_limit = memory_limit

    def _install_host(self, ctx: 'quickjs.Context', bindings: ScriptBindings) -> None:
        ctx.eval(PRELUDE)
        assignments = {
            '__store': bindings.store.snapshot(),
            'result': bindings.result,
            'src': bindings.src,
            'baseUrl': bindings.base_url,
            'book': bindings.book or {},
            'chapter': bindings.chapter or {},
        }
        assignments.update(bindings.extra)
        ctx.eval(''.join(f"var {name} = {_js_literal(value)};\n" for name, value in assignments.items()))

    def _write_back(self, ctx: 'quickjs.Context', store: Any) -> None:
        """Copy the script's put() calls into the store and flush java.log lines."""
        for key, value in json.loads(ctx.eval('JSON.stringify(__puts)')).items():
            store.put(key, value)
        for message in json.loads(ctx.eval('JSON.stringify(__logs)')):
            logger.info(f"[Script] {message}")

    def run(self, source: str, bindings: ScriptBindings) -> ScriptOutcome:
        code = rhino_to_es(substitute_placeholders(source, bindings.book)).strip()
        if not code:
            return ScriptOutcome(None)

        ctx = quickjs.Context()
        ctx.set_memory_limit(self.memory_limit)
        ctx.set_time_limit(self.timeout)
        try:
            self._install_host(ctx, bindings)
            if bindings.js_lib:
                ctx.eval(rhino_to_es(bindings.js_lib))
            value = _to_python(ctx.eval(code))
            self._write_back(ctx, bindings.store)
            return ScriptOutcome(value)
        except quickjs.JSException as e:
            message = str(e)
            if 'interrupted' in message.lower():
                message = f"Script timed out after {self.timeout}s"
            logger.warning(f"[Script] {message} in: {code[:120]}")
            return ScriptOutcome(None, message)
        except (TypeError, ValueError) as e:
            logger.warning(f"[Script] Could not convert script result: {e}")
            return ScriptOutcome(None, f"Unsupported script result: {e}")
