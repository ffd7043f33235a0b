"""DomainPilot: Caddy routing controller for local Docker development.

Watches Docker container start/die events and a host-routes file, and keeps a
single Caddy JSON configuration in sync with them:
 - containers with DOMAINPILOT_VHOST get a reverse-proxy route
 - lines in host-routes.conf route a domain to a port on the host
 - every change is validated, swapped in atomically and loaded into Caddy

The reconciler is the only writer of the configuration file.
"""
