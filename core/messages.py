"""
User-facing connector hints.

Keys are error kinds; the Firebird network variants add guidance about
host names and VPN reachability, which is the usual cause for hosted
Firebird servers.
"""

from typing import Dict, Optional

MESSAGES: Dict[str, Dict[str, str]] = {
    "en": {
        "ConnectionTimeout": "The server did not answer within {timeout:g} seconds. Check the host, the port and any firewall in between.",
        "AuthFailed": "The server rejected the user name or password.",
        "HostUnreachable": "The host could not be reached. Check that the host name is correct and reachable from this network.",
        "ConnectionRefused": "The host refused the connection. Check that the port is correct and the database server is running.",
        "QueryError": "The database rejected the query: {detail}",
        "Unknown": "Unexpected connection error: {detail}",
        "UnsupportedDialect": "Connection type '{dialect}' is not supported.",
        "firebird.ConnectionRefused": "Could not connect to the server. Check that the host and port are correct and that the Firebird server is running and accessible.",
        "firebird.HostUnreachable": "There is no route to the server (network unreachable). Make sure Host is only the server name, not the database path. If the server is on a private network it must be reachable from here, for example through a VPN.",
    },
    "es": {
        "ConnectionTimeout": "El servidor no respondió en {timeout:g} segundos. Revisá el host, el puerto y cualquier firewall intermedio.",
        "AuthFailed": "El servidor rechazó el usuario o la contraseña.",
        "HostUnreachable": "No se pudo alcanzar el host. Revisá que el nombre sea correcto y accesible desde esta red.",
        "ConnectionRefused": "El host rechazó la conexión. Revisá que el puerto sea correcto y que el servidor de base de datos esté encendido.",
        "QueryError": "La base de datos rechazó la consulta: {detail}",
        "Unknown": "Error inesperado de conexión: {detail}",
        "UnsupportedDialect": "Tipo de conexión '{dialect}' no soportado.",
        "firebird.ConnectionRefused": "No se pudo conectar al servidor. Revisá que el host y el puerto sean correctos y que el servidor Firebird esté encendido y accesible.",
        "firebird.HostUnreachable": "No hay ruta hasta el servidor (red inalcanzable). Revisá que el Host sea solo el nombre del servidor y no el path de la base. Si el servidor está en una red privada debe ser accesible desde tu red o VPN.",
    },
}


def hint(kind: str, locale: str = "en", dialect: Optional[str] = None, **values) -> str:
    """Return the localized hint for an error kind, falling back to English."""
    catalog = MESSAGES.get(locale, MESSAGES["en"])
    template = None
    if dialect:
        template = catalog.get(f"{dialect}.{kind}")
    if template is None:
        template = catalog.get(kind) or catalog["Unknown"]
    values.setdefault("detail", "")
    values.setdefault("timeout", 0)
    values.setdefault("dialect", dialect or "")
    return template.format(**values)
