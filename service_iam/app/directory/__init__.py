from .ldap_client import DirectoryEntry, DirectoryGroupSync, LdapDirectoryClient

__all__ = ["DirectoryEntry", "DirectoryGroupSync", "LdapDirectoryClient"]
