from __future__ import annotations

import ssl
from typing import Optional, Union

from secretsfs.config import TlsConfig
from secretsfs.errors import ConfigError


class SSLContextBuilder:
    def __init__(self, tls: TlsConfig) -> None:
        self._tls = tls

    def build_client(self) -> Union[ssl.SSLContext, bool]:
        """
        Context for talking to the backend, or False when verification is off.

        Client cert/key are loaded into the context for mutual TLS.
        """
        tls = self._tls
        if tls.insecure:
            return False
        try:
            context = ssl.create_default_context(cafile=tls.cacert, capath=tls.capath)
            if tls.clientcert:
                context.load_cert_chain(certfile=tls.clientcert, keyfile=tls.clientkey)
        except (OSError, ssl.SSLError) as e:
            raise ConfigError(f"Cannot load TLS material: {e}") from e
        return context

    @property
    def server_name(self) -> Optional[str]:
        return self._tls.tlsservername
