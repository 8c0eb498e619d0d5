"""
Frontdoor certificate and routing control plane — CLI entry point.

Usage:
  python main.py --ensure-ca                         # Create the internal root CA if missing
  python main.py --issue-agent acme-1 --target 10.0.0.5
  python main.py --revoke-agent acme-1               # Delete an agent's certificate files
  python main.py --renew-once                        # Run one renewal check immediately
  python main.py --issue-wildcard                    # Force-issue the public wildcard certificate
  python main.py --list-routes                       # Show routes found on the proxy
  python main.py --schedule                          # Run renewal checks on the configured interval
"""
from __future__ import annotations

import argparse
import logging
import sys
import time

import structlog

# ── Logging setup ─────────────────────────────────────────────────────────────

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger(__name__)


# ── Component wiring ──────────────────────────────────────────────────────────


def build_issuer():
    from frontdoor.pki.ca import CertificateAuthority
    from frontdoor.pki.issuer import AgentCertificateIssuer

    ca = CertificateAuthority.from_settings()
    ca.ensure_ca()
    return AgentCertificateIssuer.from_settings(ca=ca)


def build_scheduler():
    from frontdoor.acme.wildcard import WildcardCertificateManager
    from frontdoor.config import settings
    from frontdoor.proxy.reload import ProxyReloader
    from frontdoor.renewal import RenewalScheduler

    wildcard = None
    if settings.AUTO_RENEW_CERTIFICATES:
        wildcard = WildcardCertificateManager.from_settings()
    return RenewalScheduler.from_settings(
        issuer=build_issuer(),
        wildcard=wildcard,
        reloader=ProxyReloader.from_settings(),
    )


# ── Commands ──────────────────────────────────────────────────────────────────


def run_ensure_ca() -> None:
    from frontdoor.pki.ca import CertificateAuthority

    ca = CertificateAuthority.from_settings()
    created = ca.ensure_ca()
    log.info("%s CA at %s (expires %s)", "Created" if created else "Found", ca.cert_path, ca.expires_at().isoformat())


def run_issue_agent(agent_id: str, target: str | None) -> None:
    leaf = build_issuer().issue_agent_certificate(agent_id, target)
    log.info("Issued certificate for %s: %s (expires %s)", leaf.domain, leaf.cert_path, leaf.expires_at.isoformat())


def run_revoke_agent(agent_id: str) -> None:
    from frontdoor.pki.ca import CertificateAuthority
    from frontdoor.pki.issuer import AgentCertificateIssuer

    issuer = AgentCertificateIssuer.from_settings(ca=CertificateAuthority.from_settings())
    if issuer.revoke_agent_certificate(agent_id):
        log.info("Removed certificate files for agent %s", agent_id)
    else:
        log.info("No certificate files for agent %s", agent_id)


def run_renew_once() -> int:
    report = build_scheduler().perform_renewal_check()
    if report.skipped:
        log.info("Another renewal run holds the lock — nothing done")
        return 0
    log.info(
        "Renewal run complete — renewed: %s | failed: %s",
        report.renewed or "none", list(report.failed) or "none",
    )
    return 1 if report.failed else 0


def run_issue_wildcard() -> None:
    from frontdoor.acme.wildcard import WildcardCertificateManager

    cert = WildcardCertificateManager.from_settings().issue_certificate()
    log.info("Wildcard certificate for %s installed at %s (%d days)",
             cert.domain, cert.full_chain_path, cert.days_remaining)


def run_list_routes() -> None:
    from frontdoor.proxy.routes import RouteManager

    manager = RouteManager.from_settings()
    manager.load_routes()
    for route in sorted(manager.list_routes(), key=lambda r: (r.agent_id, r.type, r.name)):
        print(f"{route.type:8} {route.agent_id:24} {route.domain:40} -> {route.target_address}"
              f"{' (tls)' if route.tls else ''}")


def run_scheduled() -> None:
    """Start the renewal timer and keep the main thread alive until interrupted."""
    scheduler = build_scheduler()
    scheduler.start()
    log.info("Entering schedule loop — press Ctrl+C to stop")
    try:
        while scheduler.running:
            time.sleep(60)
    except KeyboardInterrupt:
        log.info("Interrupted, stopping scheduler")
    finally:
        scheduler.stop()


# ── CLI ───────────────────────────────────────────────────────────────────────


def main() -> None:
    from frontdoor.errors import FrontdoorError

    parser = argparse.ArgumentParser(
        description="Frontdoor certificate and routing control plane",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --ensure-ca
  python main.py --issue-agent acme-1 --target 10.0.0.5
  python main.py --revoke-agent acme-1
  python main.py --renew-once
  python main.py --issue-wildcard
  python main.py --schedule
        """,
    )
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--ensure-ca", action="store_true", help="Create the internal root CA if it does not exist")
    group.add_argument("--issue-agent", metavar="AGENT_ID", help="Issue (or return the cached) certificate for an agent")
    group.add_argument("--revoke-agent", metavar="AGENT_ID", help="Delete an agent's certificate files")
    group.add_argument("--renew-once", action="store_true", help="Run one renewal check immediately and exit")
    group.add_argument("--issue-wildcard", action="store_true", help="Issue the public wildcard certificate now")
    group.add_argument("--list-routes", action="store_true", help="List routes configured on the proxy")
    group.add_argument(
        "--schedule",
        action="store_true",
        help="Run renewal checks on RENEWAL_CHECK_INTERVAL_MINUTES (set in .env)",
    )
    parser.add_argument(
        "--target",
        metavar="ADDR",
        help="Agent database address to include in the certificate SANs (with --issue-agent)",
    )

    args = parser.parse_args()
    if args.target and not args.issue_agent:
        parser.error("--target requires --issue-agent")

    try:
        if args.ensure_ca:
            run_ensure_ca()
        elif args.issue_agent:
            run_issue_agent(args.issue_agent, args.target)
        elif args.revoke_agent:
            run_revoke_agent(args.revoke_agent)
        elif args.renew_once:
            sys.exit(run_renew_once())
        elif args.issue_wildcard:
            run_issue_wildcard()
        elif args.list_routes:
            run_list_routes()
        elif args.schedule:
            run_scheduled()
    except FrontdoorError as exc:
        log.error("%s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
