"""Run the webhook over TLS and shut it down cleanly on SIGTERM/SIGINT.

Kubernetes sends SIGTERM when the webhook pod is deleted. We stop accepting
connections, give requests that are already being handled up to
--shutdown-grace-period seconds to finish, and exit.
"""

import argparse
import logging
import os
import signal
import ssl
import sys
import threading

from werkzeug.serving import make_server

from exc import ConfigurationError
import mutate

LOG = logging.getLogger(__name__)


class InflightTracker:
    """WSGI middleware that counts requests currently being handled."""

    def __init__(self, app):
        self.app = app
        self.inflight = 0
        self._cond = threading.Condition()

    def __call__(self, environ, start_response):
        with self._cond:
            self.inflight += 1
        try:
            # The response body is produced while the iterable is consumed,
            # so materialize it before the request stops counting.
            result = self.app(environ, start_response)
            try:
                return list(result)
            finally:
                if hasattr(result, "close"):
                    result.close()
        finally:
            with self._cond:
                self.inflight -= 1
                self._cond.notify_all()

    def wait_idle(self, timeout: float) -> bool:
        """Block until no request is in flight or timeout expires.

        Returns True if the server went idle.
        """
        with self._cond:
            return self._cond.wait_for(lambda: self.inflight == 0, timeout=timeout)


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="kube-failover mutating webhook")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=8443, help="webhook server port")
    p.add_argument(
        "--tls-cert-file",
        default="/etc/webhook/certs/cert.pem",
        help="x509 certificate file for TLS connections",
    )
    p.add_argument(
        "--tls-key-file",
        default="/etc/webhook/certs/key.pem",
        help="x509 private key file for TLS connections",
    )
    p.add_argument("--not-ready-toleration-seconds", type=int)
    p.add_argument("--unreachable-toleration-seconds", type=int)
    p.add_argument(
        "--pod-selector", help="only mutate pods with these labels (key=value,...)"
    )
    p.add_argument("--shutdown-grace-period", type=float, default=10.0)

    return p.parse_args(argv)


def app_config(args) -> dict:
    """Map command line flags onto application settings.

    Flags that were not given fall through to the environment and defaults.
    """
    config = {}
    if args.not_ready_toleration_seconds is not None:
        config["NOT_READY_TOLERATION_SECONDS"] = args.not_ready_toleration_seconds
    if args.unreachable_toleration_seconds is not None:
        config["UNREACHABLE_TOLERATION_SECONDS"] = args.unreachable_toleration_seconds
    if args.pod_selector is not None:
        config["POD_SELECTOR"] = args.pod_selector

    return config


def load_tls_context(cert_file, key_file) -> ssl.SSLContext:
    for path in (cert_file, key_file):
        if not os.path.isfile(path):
            raise ConfigurationError(f"TLS material not found at {path}")

    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    try:
        ctx.load_cert_chain(cert_file, key_file)
    except (OSError, ssl.SSLError) as err:
        raise ConfigurationError(f"failed to load key pair: {err}")

    return ctx


def main(argv=None):
    args = parse_args(argv)

    try:
        ssl_context = load_tls_context(args.tls_cert_file, args.tls_key_file)
    except ConfigurationError as err:
        LOG.error("%s", err)
        sys.exit(1)

    app = mutate.create_app(**app_config(args))
    tracker = InflightTracker(app)
    server = make_server(
        args.host, args.port, tracker, threaded=True, ssl_context=ssl_context
    )

    stop = threading.Event()

    def handle_signal(signum, frame):
        LOG.info("received %s, shutting down", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    LOG.info("starting kube-failover webhook server on port %d", args.port)
    worker = threading.Thread(target=server.serve_forever, daemon=True)
    worker.start()

    stop.wait()

    # serve_forever stops accepting new connections once shutdown returns.
    server.shutdown()
    if not tracker.wait_idle(args.shutdown_grace_period):
        LOG.warning(
            "%d requests still in flight after %.1f seconds",
            tracker.inflight,
            args.shutdown_grace_period,
        )
    server.server_close()


if __name__ == "__main__":
    main()
