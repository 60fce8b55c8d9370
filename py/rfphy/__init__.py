'''Control core for AD9361-class RF transceivers.'''
