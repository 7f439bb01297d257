"""
Auth package for Hashlink Platform.

Anonymous user identity: every client gets a signed `auth` cookie carrying
its user id. Nothing here checks passwords; the token only proves the id was
issued by this server.
"""
