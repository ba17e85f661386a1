# Certificate, proxy and watcher services
